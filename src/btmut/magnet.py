"""
Magnet codec -- the only place that knows the owner-extension format.

A plain magnet pins one snapshot:

    magnet:?xt=urn:btih:<info-hash>&dn=<name>&tr=<tracker>

A mutable one also names the publication's owner key, which makes it a
pointer that must be resolved before anything can be fetched:

    magnet:?xt=urn:btih:<info-hash>&...&xs=urn:btpk:<public-key-hex>

A freshly created publication has no snapshot yet and carries only the
owner key (`magnet:?xs=urn:btpk:<hex>`).
"""

from __future__ import annotations

import re
from typing import Optional
from urllib.parse import unquote

from . import BTPK_PREFIX
from .errors import MalformedIdentifierError
from .models import MagnetInfo

MAGNET_SCHEME = "magnet:?"
BTIH_PREFIX = "urn:btih:"
PUBLIC_KEY_LENGTH = 32

_HEX_INFO_HASH = re.compile(r"^[0-9a-fA-F]{40}$")
_BASE32_INFO_HASH = re.compile(r"^[A-Z2-7]{32}$")


def _parse_info_hash(value: str) -> str:
    if _HEX_INFO_HASH.match(value):
        return value.lower()
    if _BASE32_INFO_HASH.match(value.upper()):
        return value.upper()
    raise MalformedIdentifierError(f"Invalid info-hash: {value!r}")


def _parse_public_key(value: str) -> bytes:
    try:
        key = bytes.fromhex(value)
    except ValueError as exc:
        raise MalformedIdentifierError(f"Owner key is not hex: {value!r}") from exc
    if len(key) != PUBLIC_KEY_LENGTH:
        raise MalformedIdentifierError(
            f"Owner key must be {PUBLIC_KEY_LENGTH} bytes, got {len(key)}"
        )
    return key


def decode(identifier: str) -> MagnetInfo:
    """Parse a magnet identifier.

    Args:
        identifier: The magnet string.

    Returns:
        MagnetInfo: Info-hash, owner key (if any) and remaining params.

    Raises:
        MalformedIdentifierError: If the string is not a valid magnet.
    """
    if not isinstance(identifier, str) or not identifier[: len(MAGNET_SCHEME)].lower() == MAGNET_SCHEME:
        raise MalformedIdentifierError(f"Not a magnet identifier: {identifier!r}")

    info_hash: Optional[str] = None
    public_key: Optional[bytes] = None
    extra: list[tuple[str, str]] = []

    for part in identifier[len(MAGNET_SCHEME):].split("&"):
        if not part:
            continue
        key, sep, raw = part.partition("=")
        if not sep or not key:
            raise MalformedIdentifierError(f"Bad magnet parameter: {part!r}")
        value = unquote(raw)

        if value.startswith(BTPK_PREFIX):
            if public_key is not None:
                raise MalformedIdentifierError("More than one owner key")
            public_key = _parse_public_key(value[len(BTPK_PREFIX):])
        elif key == "xt" and value.lower().startswith(BTIH_PREFIX):
            if info_hash is not None:
                raise MalformedIdentifierError("More than one btih info-hash")
            info_hash = _parse_info_hash(value[len(BTIH_PREFIX):])
        else:
            extra.append((key, raw))

    if info_hash is None and public_key is None:
        raise MalformedIdentifierError(
            f"Magnet has neither an info-hash nor an owner key: {identifier!r}"
        )

    info = MagnetInfo(info_hash=info_hash, public_key=public_key, extra=tuple(extra))
    if _canonical(info) != identifier:
        info = info.model_copy(update={"verbatim": identifier})
    return info


def _same_target(a: MagnetInfo, b: MagnetInfo) -> bool:
    return (a.info_hash, a.public_key, a.extra) == (b.info_hash, b.public_key, b.extra)


def encode(info: MagnetInfo) -> str:
    """Build a magnet identifier.

    An identifier decoded from a non-canonical string comes back exactly
    as written, as long as its fields were not changed since. Otherwise
    the canonical form is built: xt first, extra params, owner key last.
    """
    if info.verbatim is not None and _same_target(decode(info.verbatim), info):
        return info.verbatim
    return _canonical(info)


def _canonical(info: MagnetInfo) -> str:
    parts = []
    if info.info_hash:
        parts.append(f"xt={BTIH_PREFIX}{info.info_hash}")
    parts.extend(f"{key}={value}" for key, value in info.extra)
    if info.public_key:
        parts.append(f"xs={BTPK_PREFIX}{info.public_key.hex()}")
    if not parts:
        raise MalformedIdentifierError("Nothing to encode")
    return MAGNET_SCHEME + "&".join(parts)


def is_owned(identifier: str) -> bool:
    """True iff the identifier decodes and carries an owner key."""
    try:
        return decode(identifier).is_owned
    except MalformedIdentifierError:
        return False


def with_owner(identifier: str, public_key: bytes) -> str:
    """Attach (or replace) the owner extension on an identifier."""
    info = decode(identifier)
    return encode(info.model_copy(update={"public_key": public_key}))


def owned_identifier(public_key: bytes, info_hash: Optional[str] = None) -> str:
    """Identifier for a publication owned by `public_key`."""
    return encode(MagnetInfo(info_hash=info_hash, public_key=public_key))
