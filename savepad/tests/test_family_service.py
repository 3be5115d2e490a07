"""
Test family resolution and membership mutations.

Covers owner resolution, invite paths (phone/email, existing/new user),
duplicate protection, removal/leave and WhatsApp confirmation.
"""
import pytest
from sqlalchemy import select, func

from savepad.core.database import family_members
from savepad.core.errors import ConflictError, NotFoundError, ValidationError
from savepad.models.family import FamilyAction
from savepad.models.plan import PlanStatus
from savepad.models.user import UserStatus


def _membership_count(database, owner_id):
    with database.session() as session:
        return session.execute(
            select(func.count()).select_from(family_members).where(family_members.c.owner_id == owner_id)
        ).scalar()


def _give_family_plan(services, owner_id):
    plan, _ = services.plans.create(owner_id, "familiar")
    return services.plans.transition(owner_id, PlanStatus.APPROVED, plan_id=plan.id)


def test_owner_with_family_plan_is_own_owner(services, make_user):
    owner = make_user(name="Owner")
    other_owner = make_user(name="Other")
    _give_family_plan(services, owner.id)
    # Even while listed as a member elsewhere
    services.family.add_member(other_owner.id, name="Owner", phone="11977776666")
    services.family.confirm_whatsapp(owner.id, "11977776666")

    view = services.family.resolve_family(owner.id)
    assert view.owner_id == owner.id
    assert view.is_owner


def test_member_resolves_to_owner(services, make_user):
    owner = make_user(name="Owner")
    member = make_user(name="Bia", phone="5511966665555")
    _give_family_plan(services, owner.id)
    services.family.add_member(owner.id, name="Bia", phone="11966665555")

    view = services.family.resolve_family(member.id)
    assert view.owner_id == owner.id
    assert view.owner_name == "Owner"
    assert not view.is_owner
    assert [m.member_id for m in view.members] == [member.id]


def test_user_without_family_owns_self(services, make_user):
    user = make_user(name="Solo")
    view = services.family.resolve_family(user.id)
    assert view.owner_id == user.id
    assert view.members == []


def test_unknown_user_is_not_found(services):
    with pytest.raises(NotFoundError):
        services.family.resolve_family(404)


def test_invite_by_phone_creates_pending_membership(services, database, make_user, notifier):
    owner = make_user(name="Carlos")
    member = services.family.add_member(owner.id, name="Ana", phone="11999999999")

    assert member.member_id is None
    assert not member.linked
    assert member.phone == "5511999999999"
    assert member.name == "Ana"
    placeholder = services.identity.by_phone("5511999999999")
    assert placeholder.status == UserStatus.INVITED
    assert notifier.family_calls == [
        {"phone": "5511999999999", "name": "Ana", "ownerName": "Carlos", "action": FamilyAction.INVITED_EXTERNAL}
    ]
    assert _membership_count(database, owner.id) == 1


def test_invite_existing_user_by_phone_links_immediately(services, make_user):
    owner = make_user(name="Carlos")
    existing = make_user(name="Joana", phone="5511955554444")

    member = services.family.add_member(owner.id, name=None, phone="11 95555-4444")

    assert member.member_id == existing.id
    assert member.linked
    assert member.name == "Joana"


def test_invite_by_email_creates_bare_profile(services, make_user, notifier):
    owner = make_user(name="Carlos")
    member = services.family.add_member(owner.id, name="Leo", email="Leo@Example.com")

    profile = services.identity.by_email("leo@example.com")
    assert profile.status == UserStatus.INVITED
    assert member.member_id == profile.id
    # No phone known, nothing to send
    assert notifier.family_calls == []


def test_invite_requires_contact(services, make_user):
    owner = make_user()
    with pytest.raises(ValidationError) as exc:
        services.family.add_member(owner.id, name="Nobody")
    assert exc.value.code == "missing_contact"


@pytest.mark.parametrize("name", [None, "", "   "])
def test_invite_requires_name(services, database, make_user, name):
    owner = make_user()
    with pytest.raises(ValidationError) as exc:
        services.family.add_member(owner.id, name=name, phone="11999999999")
    assert exc.value.code == "missing_name"
    assert _membership_count(database, owner.id) == 0
    assert services.identity.by_phone("11999999999") is None


def test_invite_rejects_short_phone(services, make_user):
    owner = make_user()
    with pytest.raises(ValidationError):
        services.family.add_member(owner.id, name="Ana", phone="1234")


def test_invite_rejects_self(services, make_user):
    owner = make_user(phone="5511944443333")
    with pytest.raises(ValidationError) as exc:
        services.family.add_member(owner.id, name="Me", phone="11944443333")
    assert exc.value.code == "self_invite"


def test_invite_unknown_owner(services):
    with pytest.raises(NotFoundError):
        services.family.add_member(12345, name="Ana", phone="11999999999")


def test_duplicate_invite_conflicts(services, database, make_user):
    owner = make_user(name="Carlos")
    make_user(name="Ana", phone="5511999999999")
    services.family.add_member(owner.id, name="Ana", phone="11999999999")

    with pytest.raises(ConflictError):
        services.family.add_member(owner.id, name="Ana again", phone="5511999999999")
    assert _membership_count(database, owner.id) == 1


def test_duplicate_pending_invite_conflicts(services, database, make_user):
    owner = make_user(name="Carlos")
    services.family.add_member(owner.id, name="Ana", phone="11999999999")

    with pytest.raises(ConflictError):
        services.family.add_member(owner.id, name="Ana", phone="(11) 99999-9999")
    assert _membership_count(database, owner.id) == 1


def test_add_then_remove_by_relation(services, database, make_user, notifier):
    owner = make_user(name="Carlos")
    member = services.family.add_member(owner.id, name="Ana", phone="11999999999")

    removed = services.family.remove_member(owner.id, relation_id=member.relation_id)

    assert removed.relation_id == member.relation_id
    assert _membership_count(database, owner.id) == 0
    removals = [c for c in notifier.family_calls if c["action"] == FamilyAction.REMOVED]
    assert removals == [
        {"phone": "5511999999999", "name": "Ana", "ownerName": "Carlos", "action": FamilyAction.REMOVED}
    ]


def test_remove_by_member_reference(services, database, make_user):
    owner = make_user(name="Carlos")
    linked = make_user(name="Joana", email="joana@example.com")
    services.family.add_member(owner.id, name="Joana", email="joana@example.com")
    services.family.add_member(owner.id, name="Ana", phone="11999999999")

    services.family.remove_member(owner.id, member_ref="joana@example.com")
    services.family.remove_member(owner.id, member_ref="11999999999")

    assert _membership_count(database, owner.id) == 0
    assert services.identity.by_id(linked.id) is not None


def test_remove_relation_of_another_owner_is_not_found(services, make_user):
    owner = make_user(name="Carlos")
    intruder = make_user(name="Intruder")
    member = services.family.add_member(owner.id, name="Ana", phone="11999999999")

    with pytest.raises(NotFoundError):
        services.family.remove_member(intruder.id, relation_id=member.relation_id)


def test_leave_removes_membership(services, database, make_user, notifier):
    owner = make_user(name="Carlos")
    member = make_user(name="Bia", phone="5511966665555")
    services.family.add_member(owner.id, name="Bia", phone="11966665555")
    calls_before = len(notifier.family_calls)

    assert services.family.leave(member.id) == 1
    assert _membership_count(database, owner.id) == 0
    assert len(notifier.family_calls) == calls_before


def test_leave_without_membership(services, make_user):
    user = make_user()
    with pytest.raises(NotFoundError) as exc:
        services.family.leave(user.id)
    assert exc.value.code == "not_a_member"


def test_confirm_whatsapp_binds_pending_invites(services, make_user):
    first_owner = make_user(name="Carlos")
    second_owner = make_user(name="Rita")
    services.family.add_member(first_owner.id, name="Ana", phone="11999999999")
    services.family.add_member(second_owner.id, name="Aninha", phone="11999999999")
    ana = make_user(name="Ana Souza", email="ana@example.com")

    result = services.family.confirm_whatsapp(ana.id, "11 99999-9999")

    assert result.linked
    assert result.linked_count == 2
    refreshed = services.identity.by_id(ana.id)
    assert refreshed.phone == "5511999999999"
    assert refreshed.status == UserStatus.ACTIVE
    assert refreshed.verified_at is not None
    view = services.family.resolve_family(first_owner.id)
    assert view.members[0].member_id == ana.id
    # Invite-time name wins for display
    assert view.members[0].name == "Ana"


def test_confirm_whatsapp_releases_placeholder(services, make_user):
    owner = make_user(name="Carlos")
    services.family.add_member(owner.id, name="Ana", phone="11999999999")
    placeholder = services.identity.by_phone("5511999999999")
    ana = make_user(name="Ana", email="ana@example.com")

    services.family.confirm_whatsapp(ana.id, "11999999999")

    released = services.identity.by_id(placeholder.id)
    assert released.phone is None
    assert released.status == UserStatus.MERGED
    assert services.identity.by_phone("5511999999999").id == ana.id


def test_confirm_whatsapp_conflicts_with_real_account(services, make_user):
    make_user(name="Owner of number", phone="5511999999999", password_hash="x")
    other = make_user(name="Other")

    with pytest.raises(ConflictError):
        services.family.confirm_whatsapp(other.id, "11999999999")
    assert services.identity.by_id(other.id).phone is None


def test_confirm_whatsapp_without_invites(services, make_user):
    user = make_user(name="Solo")
    result = services.family.confirm_whatsapp(user.id, "11911112222")
    assert not result.linked
    assert result.linked_count == 0


def test_confirm_drops_pending_row_when_already_linked(services, database, make_user):
    owner = make_user(name="Carlos")
    ana = make_user(name="Ana", email="ana@example.com")
    services.family.add_member(owner.id, name="Ana", email="ana@example.com")
    services.family.add_member(owner.id, name="Ana", phone="11999999999")

    result = services.family.confirm_whatsapp(ana.id, "11999999999")

    assert result.linked_count == 0
    assert _membership_count(database, owner.id) == 1


def test_legacy_member_list_shape(services, make_user):
    owner = make_user(name="Carlos")
    services.family.add_member(owner.id, name="Ana", phone="11999999999")

    rows = services.family.legacy_member_list(owner.id)
    assert rows == [
        {
            "id": rows[0]["id"],
            "member_id": None,
            "name": "Ana",
            "phone": "5511999999999",
            "isLinked": False,
        }
    ]


def test_notifier_failure_does_not_fail_invite(services, make_user, notifier):
    notifier.result = False
    owner = make_user(name="Carlos")
    member = services.family.add_member(owner.id, name="Ana", phone="11999999999")
    assert member.relation_id
