"""Tests for phone normalization and user reference resolution."""

import pytest

from savepad.core.errors import NotFoundError, ValidationError
from savepad.features.identity.service import (
    IdentityResolver,
    normalize_phone,
    is_valid_phone,
    parse_id,
    require_phone,
)


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("11999999999", "5511999999999"),
        ("(11) 99999-9999", "5511999999999"),
        ("+55 11 99999-9999", "5511999999999"),
        ("5511999999999", "5511999999999"),
        (11999999999, "5511999999999"),
    ],
)
def test_normalize_phone(raw, expected):
    assert normalize_phone(raw) == expected


def test_normalize_phone_is_idempotent():
    once = normalize_phone("(21) 98888-7777")
    assert normalize_phone(once) == once
    assert once.isdigit()
    assert once.startswith("55")


def test_short_numbers_are_rejected():
    assert not is_valid_phone(normalize_phone("123"))
    with pytest.raises(ValidationError) as exc:
        require_phone("123")
    assert exc.value.code == "invalid_phone"


def test_resolve_by_id_email_and_phone(database, make_user):
    user = make_user(name="Ana", email="ana@example.com", phone="5511988887777")
    identity = IdentityResolver(database)

    assert identity.resolve(user.id).id == user.id
    assert identity.resolve(str(user.id)).id == user.id
    assert identity.resolve("ANA@Example.com").id == user.id
    assert identity.resolve("(11) 98888-7777").id == user.id


def test_numeric_id_wins_over_phone(database, make_user):
    first = make_user(name="First")
    make_user(name="Second", phone=normalize_phone(str(first.id) * 10))
    identity = IdentityResolver(database)

    assert identity.resolve(str(first.id)).name == "First"


def test_resolve_returns_none_on_miss(database):
    identity = IdentityResolver(database)
    assert identity.resolve("nobody@example.com") is None
    assert identity.resolve("") is None
    assert identity.resolve(None) is None


def test_require_raises_not_found(database):
    identity = IdentityResolver(database)
    with pytest.raises(NotFoundError) as exc:
        identity.require(999)
    assert exc.value.status_code == 404


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("7", 7),
        (" 42 ", 42),
        (42, 42),
        ("9223372036854775807", 2 ** 63 - 1),
        ("9223372036854775808", None),
        ("99999999999999999999", None),
        ("²", None),
        ("١٢", None),
        ("0", None),
        ("-3", None),
        (True, None),
        (None, None),
    ],
)
def test_parse_id_accepts_only_storable_ascii_ids(raw, expected):
    assert parse_id(raw) == expected


@pytest.mark.parametrize("ref", ["99999999999999999999", "²", "١٢", 2 ** 70])
def test_out_of_range_or_non_ascii_refs_are_misses(database, make_user, ref):
    make_user(name="Ana", phone="5511999999999")
    resolver = IdentityResolver(database)

    assert resolver.resolve(ref) is None
    assert resolver.by_id(ref) is None
    with pytest.raises(NotFoundError):
        resolver.require(ref)


def test_long_digit_ref_falls_through_to_phone(database, make_user):
    user = make_user(name="Ana", phone="5511999999999999999999")
    resolver = IdentityResolver(database)

    assert resolver.resolve("11999999999999999999").id == user.id


def test_session_or_joins_the_given_session(database):
    with database.session() as outer:
        with database.session_or(outer) as joined:
            assert joined is outer
    with database.session_or(None) as own:
        assert own is not None
