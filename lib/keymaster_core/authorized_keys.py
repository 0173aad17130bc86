"""Rendering and parsing of the Keymaster-managed block in authorized_keys.

A managed block looks like::

    # Keymaster Managed Keys (Serial: 3)
    command="internal-sftp",... ssh-ed25519 AAAA... keymaster-system
    ssh-ed25519 AAAA... alice@laptop
    # End Keymaster Managed Keys

Everything outside the block belongs to someone else and is preserved
byte-for-byte by selective edits.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable

from .errors import DatabaseInconsistencyError, NoSystemKeyError
from .interfaces import KeyStore
from .models import PublicKey, SystemKey, utcnow

HEADER_PREFIX = "# Keymaster Managed Keys"
FOOTER = "# End Keymaster Managed Keys"
SYSTEM_KEY_RESTRICTIONS = (
    'command="internal-sftp",no-port-forwarding,no-x11-forwarding,no-agent-forwarding,no-pty'
)

_SERIAL_RE = re.compile(r"Serial: (\d+)")
_KEY_TYPE_PREFIXES = ("ssh-", "ecdsa-", "sk-ssh-", "sk-ecdsa-")


def header_line(serial: int) -> str:
    return f"{HEADER_PREFIX} (Serial: {int(serial)})"


def parse_serial(line: str) -> int:
    line = line.strip()
    if not line.startswith(HEADER_PREFIX):
        raise ValueError("not a keymaster managed keys header line")
    match = _SERIAL_RE.search(line)
    if not match:
        raise ValueError("serial number not found in header")
    return int(match.group(1))


def _is_key_type(token: str) -> bool:
    return token.startswith(_KEY_TYPE_PREFIXES)


def parse_key_line(line: str) -> tuple[str, str, str]:
    """Split an authorized_keys line into (algorithm, key data, comment).

    Leading options such as ``command="..."`` are skipped.
    """
    fields = line.split()
    if not fields:
        raise ValueError("empty line")
    start = next((i for i, f in enumerate(fields) if _is_key_type(f)), -1)
    if start == -1:
        raise ValueError("no valid SSH key type found in line")
    if len(fields) < start + 2:
        raise ValueError("invalid public key format: missing key data after algorithm")
    return fields[start], fields[start + 1], " ".join(fields[start + 2:])


def normalize_content(text: str | bytes) -> str:
    if isinstance(text, bytes):
        text = text.decode("utf-8", errors="replace")
    return text.replace("\r\n", "\n").strip()


def content_hash(text: str | bytes) -> str:
    return hashlib.sha256(normalize_content(text).encode("utf-8")).hexdigest()


def _select_keys(
        keys: Iterable[PublicKey],
        *,
        now: datetime,
        excluded_key_ids: Iterable[int] = (),
) -> list[PublicKey]:
    excluded = set(excluded_key_ids)
    by_id: dict[int, PublicKey] = {}
    for key in keys:
        if key.id in excluded or key.is_expired(now):
            continue
        by_id[key.id] = key
    return sorted(by_id.values(), key=lambda k: (k.comment, k.id))


def build_authorized_keys(
        system_key: SystemKey | None,
        keys: Iterable[PublicKey],
        *,
        now: datetime,
        excluded_key_ids: Iterable[int] = (),
        include_system_header: bool = True,
) -> str:
    """Pure renderer: the same inputs always give byte-identical output."""
    selected = _select_keys(keys, now=now, excluded_key_ids=excluded_key_ids)
    lines: list[str] = []
    if include_system_header:
        if system_key is None:
            raise NoSystemKeyError("no active system key provided")
        lines.append(header_line(system_key.serial))
        lines.append(f"{SYSTEM_KEY_RESTRICTIONS} {system_key.public_key.strip()}")
    lines.extend(k.line() for k in selected)
    if include_system_header:
        lines.append(FOOTER)
    if not lines:
        return ""
    return "\n".join(lines) + "\n"


class ContentRenderer:
    def __init__(self, keys: KeyStore, clock: Callable[[], datetime] = utcnow):
        self._keys = keys
        self._clock = clock

    def _system_key(self, serial: int | None) -> SystemKey:
        if serial is None:
            key = self._keys.get_active_system_key()
            if key is None:
                raise NoSystemKeyError("no active system key found; generate one first")
            return key
        key = self._keys.get_system_key_by_serial(serial)
        if key is None:
            raise DatabaseInconsistencyError(f"no system key found for serial {serial}")
        return key

    def render(
            self,
            account_id: int,
            excluded_key_ids: Iterable[int] = (),
            include_system_header: bool = True,
            *,
            serial: int | None = None,
    ) -> str:
        system_key = self._system_key(serial) if include_system_header else None
        keys = [*self._keys.get_global_public_keys(), *self._keys.get_keys_for_account(account_id)]
        return build_authorized_keys(
            system_key,
            keys,
            now=self._clock(),
            excluded_key_ids=excluded_key_ids,
            include_system_header=include_system_header,
        )

    def render_for_keys(self, key_ids: Iterable[int], *, serial: int | None = None) -> str:
        """Global keys plus an explicit selection, for accounts not created yet."""
        wanted = set(key_ids)
        selected = [k for k in self._keys.get_all_public_keys() if k.is_global or k.id in wanted]
        return build_authorized_keys(self._system_key(serial), selected, now=self._clock())


@dataclass(frozen=True)
class ManagedBlock:
    start: int
    end: int
    serial: int | None
    lines: tuple[str, ...]

    @property
    def text(self) -> str:
        return "".join(self.lines)

    def key_lines(self) -> list[str]:
        out = []
        for line in self.lines:
            stripped = line.strip()
            if stripped and not stripped.startswith("#"):
                out.append(stripped)
        return out


def _looks_managed(stripped: str) -> bool:
    if not stripped or stripped.startswith("#") or stripped.startswith("command="):
        return True
    return _is_key_type(stripped.split(None, 1)[0])


def find_managed_block(content: str) -> ManagedBlock | None:
    lines = content.splitlines(keepends=True)
    start = next((i for i, ln in enumerate(lines) if ln.strip().startswith(HEADER_PREFIX)), -1)
    if start == -1:
        return None
    try:
        serial: int | None = parse_serial(lines[start])
    except ValueError:
        serial = None

    end = next((i for i in range(start + 1, len(lines)) if lines[i].strip() == FOOTER), -1)
    if end == -1:
        # Footer-less block: runs until the first line that is not a comment or key.
        end = start
        for i in range(start + 1, len(lines)):
            stripped = lines[i].strip()
            if stripped.startswith(HEADER_PREFIX) or not _looks_managed(stripped):
                break
            end = i
        while end > start and not lines[end].strip():
            end -= 1
    return ManagedBlock(start=start, end=end, serial=serial, lines=tuple(lines[start:end + 1]))


def split_managed_block(content: str) -> tuple[str, ManagedBlock | None, str]:
    """Return (prefix, block, suffix); with no block the whole content is prefix."""
    block = find_managed_block(content)
    if block is None:
        return content, None, ""
    lines = content.splitlines(keepends=True)
    return "".join(lines[:block.start]), block, "".join(lines[block.end + 1:])


def replace_managed_block(content: str, new_block: str) -> tuple[str, ManagedBlock | None]:
    prefix, block, suffix = split_managed_block(content)
    if new_block and not new_block.endswith("\n"):
        new_block += "\n"
    if block is None and new_block and prefix and not prefix.endswith("\n"):
        prefix += "\n"
    if block is not None and not new_block and suffix and not suffix.strip() and not prefix:
        suffix = ""
    return prefix + new_block + suffix, block


def remove_matching_lines(content: str, lines_to_remove: Iterable[str]) -> str:
    targets = {ln.strip() for ln in lines_to_remove if ln.strip()}
    kept = [ln for ln in content.splitlines(keepends=True) if ln.strip() not in targets]
    return "".join(kept)
