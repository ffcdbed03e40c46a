"""
bt-mut -- keep a folder in sync with a mutable torrent.

A directory is bound to one magnet link through its `.bt` pointer file.
Own the key and every sync republishes the folder. Don't own it and
every sync pulls the latest snapshot the owner published.
"""

import os

__version__ = "0.1.0"
__author__ = "bt-mut contributors"

BT_FILE = ".bt"
BTPK_PREFIX = "urn:btpk:"

BTMUT_HOME = os.environ.get("BTMUT_HOME")
