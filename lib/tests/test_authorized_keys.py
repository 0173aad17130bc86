from __future__ import annotations

from datetime import timedelta

import pytest

from keymaster_core.authorized_keys import (
    FOOTER,
    SYSTEM_KEY_RESTRICTIONS,
    build_authorized_keys,
    content_hash,
    find_managed_block,
    parse_key_line,
    parse_serial,
    split_managed_block,
)
from keymaster_core.errors import DatabaseInconsistencyError, NoSystemKeyError
from keymaster_core.models import PublicKey, SystemKey

from remote_fakes import FIXED_NOW

SYS = SystemKey(id=1, serial=3, public_key="ssh-ed25519 AAAASYS keymaster-system", private_key="x", is_active=True)


def _key(id_, comment, **kw):
    return PublicKey(id=id_, algorithm="ssh-ed25519", key_data=f"AAAA{id_}", comment=comment, **kw)


def test_build_with_header_orders_by_comment_then_id() -> None:
    keys = [_key(2, "bob"), _key(1, "alice"), _key(3, "alice")]
    out = build_authorized_keys(SYS, keys, now=FIXED_NOW)
    assert out.splitlines() == [
        "# Keymaster Managed Keys (Serial: 3)",
        f"{SYSTEM_KEY_RESTRICTIONS} ssh-ed25519 AAAASYS keymaster-system",
        "ssh-ed25519 AAAA1 alice",
        "ssh-ed25519 AAAA3 alice",
        "ssh-ed25519 AAAA2 bob",
        FOOTER,
    ]
    assert out.endswith("\n")


def test_build_drops_expired_excluded_and_duplicates() -> None:
    keys = [
        _key(1, "old", expires_at=FIXED_NOW - timedelta(seconds=1)),
        _key(2, "future", expires_at=FIXED_NOW + timedelta(days=1)),
        _key(3, "gone"),
        _key(2, "future", expires_at=FIXED_NOW + timedelta(days=1)),
    ]
    out = build_authorized_keys(SYS, keys, now=FIXED_NOW, excluded_key_ids=[3])
    assert "AAAA1" not in out
    assert "AAAA3" not in out
    assert out.count("AAAA2 future") == 1


def test_build_without_header_is_bare_lines() -> None:
    assert build_authorized_keys(None, [], now=FIXED_NOW, include_system_header=False) == ""
    out = build_authorized_keys(None, [_key(1, "")], now=FIXED_NOW, include_system_header=False)
    assert out == "ssh-ed25519 AAAA1\n"


def test_build_requires_system_key_for_header() -> None:
    with pytest.raises(NoSystemKeyError):
        build_authorized_keys(None, [], now=FIXED_NOW)


def test_render_is_deterministic(store, renderer, system_key) -> None:
    account = store.add_account("deploy", "web1")
    k1 = store.add_public_key("ssh-ed25519", "AAAAB", "bob")
    store.add_public_key("ssh-ed25519", "AAAAG", "global", is_global=True)
    store.assign_key_to_account(k1.id, account.id)

    first = renderer.render(account.id)
    second = renderer.render(account.id)
    assert first == second
    assert "AAAAB bob" in first
    assert "AAAAG global" in first


def test_render_under_unknown_serial_is_inconsistent(store, renderer, system_key) -> None:
    account = store.add_account("deploy", "web1")
    with pytest.raises(DatabaseInconsistencyError):
        renderer.render(account.id, serial=99)


def test_render_for_keys_uses_selection_and_globals(store, renderer, system_key) -> None:
    picked = store.add_public_key("ssh-ed25519", "AAAAP", "picked")
    store.add_public_key("ssh-ed25519", "AAAAN", "not-picked")
    store.add_public_key("ssh-ed25519", "AAAAG", "global", is_global=True)
    out = renderer.render_for_keys([picked.id])
    assert "AAAAP picked" in out
    assert "AAAAG global" in out
    assert "AAAAN" not in out


def test_find_managed_block_with_footer() -> None:
    content = "ssh-rsa AAAAX mine\n# Keymaster Managed Keys (Serial: 2)\nssh-ed25519 AAAA1 a\n" + FOOTER + "\ntrailer\n"
    block = find_managed_block(content)
    assert block is not None
    assert block.serial == 2
    assert (block.start, block.end) == (1, 3)
    assert block.key_lines() == ["ssh-ed25519 AAAA1 a"]


def test_find_managed_block_legacy_without_footer_stops_at_foreign_line() -> None:
    content = "# Keymaster Managed Keys (Serial: 5)\nssh-ed25519 AAAA1 a\n\nnot a key line\n"
    prefix, block, suffix = split_managed_block(content)
    assert prefix == ""
    assert block is not None and block.serial == 5
    assert block.text == "# Keymaster Managed Keys (Serial: 5)\nssh-ed25519 AAAA1 a\n"
    assert suffix == "\nnot a key line\n"


def test_find_managed_block_absent() -> None:
    assert find_managed_block("ssh-ed25519 AAAA1 a\n") is None


def test_parse_serial() -> None:
    assert parse_serial("# Keymaster Managed Keys (Serial: 42)") == 42
    with pytest.raises(ValueError):
        parse_serial("# something else")


def test_parse_key_line_skips_options() -> None:
    line = f"{SYSTEM_KEY_RESTRICTIONS} ssh-ed25519 AAAASYS keymaster system"
    assert parse_key_line(line) == ("ssh-ed25519", "AAAASYS", "keymaster system")
    with pytest.raises(ValueError):
        parse_key_line("no key here")


def test_content_hash_ignores_line_endings_and_outer_whitespace() -> None:
    assert content_hash("a\r\nb\r\n") == content_hash("a\nb")
    assert content_hash("a\nb") != content_hash("a\nc")
