import pytest

from roomd.identity import Identity, IdentityError, IdentityResolver


def test_display_name_defaults_lazily() -> None:
    ident = Identity(id=7)
    assert ident.display_name == ""
    assert ident.ensure_display_name() == "User #7"
    assert ident.display_name == "User #7"


def test_display_name_is_kept_once_set() -> None:
    ident = Identity(id=7, display_name="Alice")
    assert ident.ensure_display_name() == "Alice"


def test_resolver_hands_out_sequential_ids(make_transport) -> None:
    resolver = IdentityResolver()
    a = resolver.resolve(make_transport())
    b = resolver.resolve(make_transport())
    assert (a.id, b.id) == (1, 2)
    assert a.display_name == ""


def test_resolver_records_peer_hash(make_transport) -> None:
    resolver = IdentityResolver()
    ident = resolver.resolve(make_transport(peer=b"\x01\x02"))
    assert ident.peer == b"\x01\x02"


def test_resolver_requires_identification(make_transport) -> None:
    resolver = IdentityResolver(require_identified=True, identify_timeout_s=0.01)
    with pytest.raises(IdentityError):
        resolver.resolve(make_transport())

    ident = resolver.resolve(make_transport(peer=b"\xaa" * 16))
    assert ident.peer == b"\xaa" * 16
