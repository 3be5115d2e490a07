"""
savepad/features/family/service.py

Family sharing: who governs a user's plan, and the membership mutations.

An owner is a user holding a familiar plan; members are family_members rows
pointing at that owner. A row with member_id NULL is a pending invitation
keyed by WhatsApp number; confirming the number binds it to the user.

Notifications go out after the transaction commits and never fail the call.
"""

from typing import Optional, List, Dict, Any

from sqlalchemy import select, insert, update, delete, and_, or_
from sqlalchemy.exc import IntegrityError

from savepad.core.clock import utc_now
from savepad.core.database import Database, users, family_members
from savepad.core.errors import ValidationError, NotFoundError, ConflictError
from savepad.core.logging import log_event
from savepad.features.identity.service import (
    IdentityResolver,
    UserRef,
    require_phone,
    normalize_phone,
    is_valid_phone,
    normalize_email,
    parse_id,
)
from savepad.features.notifications.bot import Notifier
from savepad.features.plans.service import PlanStore
from savepad.models.family import FamilyAction, FamilyMember, FamilyView, LinkResult
from savepad.models.user import User, UserStatus


def _member_query():
    """Memberships joined with the linked user (if any) for display."""
    return select(
        family_members.c.id,
        family_members.c.owner_id,
        family_members.c.member_id,
        family_members.c.name,
        family_members.c.whatsapp_number,
        users.c.name.label("user_name"),
        users.c.phone.label("user_phone"),
    ).select_from(
        family_members.outerjoin(users, users.c.id == family_members.c.member_id)
    )


def _to_member(row) -> FamilyMember:
    # Invite-time name wins; the confirmed phone of the linked user wins
    return FamilyMember(
        relation_id=row.id,
        member_id=row.member_id,
        name=row.name or row.user_name,
        phone=row.user_phone or row.whatsapp_number,
        linked=row.member_id is not None,
    )


class FamilyService:
    def __init__(self, db: Database, identity: IdentityResolver, plans: PlanStore, notifier: Notifier):
        self.db = db
        self.identity = identity
        self.plans = plans
        self.notifier = notifier

    def _notify(self, phone: Optional[str], name: Optional[str], owner_name: Optional[str], action: str) -> bool:
        try:
            return self.notifier.notify_family(phone, name, owner_name, action)
        except Exception as exc:
            log_event("error", "family.notify_failed", event_type=action, error_code="notify_error", extra={"error": repr(exc)})
            return False

    # Resolution

    def owner_for(self, user_id: int, session=None) -> int:
        """
        Billing owner for a user: self when they hold a familiar plan, else the
        owner of their most recent membership, else self.
        """
        with self.db.session_or(session) as s:
            if self.plans.has_family_plan(user_id, session=s):
                return user_id
            row = s.execute(
                select(family_members.c.owner_id)
                .where(family_members.c.member_id == user_id)
                .order_by(family_members.c.id.desc())
                .limit(1)
            ).first()
            return row.owner_id if row else user_id

    def members_of(self, owner_id: int, session=None) -> List[FamilyMember]:
        with self.db.session_or(session) as s:
            rows = s.execute(
                _member_query()
                .where(family_members.c.owner_id == owner_id)
                .order_by(family_members.c.id)
            ).all()
            return [_to_member(row) for row in rows]

    def resolve_family(self, user_ref: UserRef) -> FamilyView:
        """
        Raises:
            NotFoundError: user reference does not resolve
        """
        with self.db.session() as s:
            user = self.identity.require(user_ref, session=s)
            owner_id = self.owner_for(user.id, session=s)
            owner = user if owner_id == user.id else self.identity.by_id(owner_id, session=s)
            members = self.members_of(owner_id, session=s)
        return FamilyView(
            user_id=user.id,
            owner_id=owner_id,
            owner_name=owner.name if owner else None,
            members=members,
        )

    def legacy_member_list(self, owner_ref: UserRef) -> List[Dict[str, Any]]:
        """Member list in the shape the bot consumes (camelCase isLinked)."""
        with self.db.session() as s:
            owner = self.identity.require(owner_ref, session=s, label="Owner")
            members = self.members_of(owner.id, session=s)
        return [
            {
                "id": m.relation_id,
                "member_id": m.member_id,
                "name": m.name,
                "phone": m.phone,
                "isLinked": m.linked,
            }
            for m in members
        ]

    # Mutations

    def add_member(
        self,
        owner_ref: UserRef,
        name: Optional[str] = None,
        phone: Optional[str] = None,
        email: Optional[str] = None,
    ) -> FamilyMember:
        """
        Invite someone into the owner's family by phone or email.

        Raises:
            ValidationError: no name or contact given, bad phone, or self-invite
            NotFoundError: owner does not exist
            ConflictError: member or number already in this family
        """
        display_name = (name or "").strip()
        if not display_name:
            raise ValidationError("Member name is required", code="missing_name")
        if not phone and not email:
            raise ValidationError("Provide a phone or member_email", code="missing_contact")
        normalized = require_phone(phone) if phone else None
        email_key = normalize_email(email) if not normalized else None

        try:
            with self.db.session() as s:
                owner = self.identity.require(owner_ref, session=s, label="Owner")
                found = (
                    self.identity.by_phone(normalized, session=s)
                    if normalized
                    else self.identity.by_email(email_key, session=s)
                )
                if found is not None and found.id == owner.id:
                    raise ValidationError("Owner cannot invite themselves", code="self_invite")

                member_id: Optional[int]
                if normalized:
                    if found is None:
                        s.execute(insert(users).values(name=display_name, phone=normalized, status=UserStatus.INVITED))
                    # Placeholders stay pending until the number is confirmed
                    member_id = None if found is None or found.is_placeholder else found.id
                    stored_phone = normalized
                else:
                    if found is None:
                        created = s.execute(insert(users).values(name=display_name, email=email_key, status=UserStatus.INVITED))
                        member_id = created.inserted_primary_key[0]
                        stored_phone = None
                    else:
                        member_id = found.id
                        stored_phone = found.phone

                conditions = []
                if member_id is not None:
                    conditions.append(family_members.c.member_id == member_id)
                if stored_phone:
                    conditions.append(family_members.c.whatsapp_number == stored_phone)
                existing = s.execute(
                    select(family_members.c.id)
                    .where(family_members.c.owner_id == owner.id)
                    .where(or_(*conditions))
                ).first()
                if existing:
                    raise ConflictError("Member already belongs to this family", code="member_exists")

                result = s.execute(
                    insert(family_members).values(
                        owner_id=owner.id,
                        member_id=member_id,
                        name=display_name,
                        whatsapp_number=stored_phone,
                        created_at=utc_now(),
                    )
                )
                relation_id = result.inserted_primary_key[0]
                row = s.execute(_member_query().where(family_members.c.id == relation_id)).first()
                member = _to_member(row)
        except IntegrityError as exc:
            raise ConflictError("Member already belongs to this family", code="member_exists") from exc

        log_event(
            "info",
            "family.member_added",
            owner_id=owner.id,
            user_id=member.member_id,
            event_type=FamilyAction.INVITED_EXTERNAL,
            extra={"relation_id": member.relation_id, "pending": not member.linked},
        )
        if member.phone:
            self._notify(member.phone, member.name, owner.name, FamilyAction.INVITED_EXTERNAL)
        return member

    def remove_member(
        self,
        owner_ref: UserRef,
        relation_id: Optional[int] = None,
        member_ref: Optional[UserRef] = None,
    ) -> FamilyMember:
        """
        Remove a membership by relation id, or by member reference.

        Returns:
            Snapshot of the removed member, taken before the delete
        """
        if relation_id is None and member_ref in (None, ""):
            raise ValidationError("Provide relation_id or member_id", code="missing_member")

        with self.db.session() as s:
            owner = self.identity.require(owner_ref, session=s, label="Owner")
            stmt = _member_query().where(family_members.c.owner_id == owner.id)
            row = None
            if relation_id is not None:
                relation_key = parse_id(relation_id)
                if relation_key is not None:
                    row = s.execute(stmt.where(family_members.c.id == relation_key)).first()
            else:
                conditions = []
                member = self.identity.resolve(member_ref, session=s)
                if member is not None:
                    conditions.append(family_members.c.member_id == member.id)
                phone = normalize_phone(member_ref)
                if is_valid_phone(phone):
                    conditions.append(
                        and_(family_members.c.member_id.is_(None), family_members.c.whatsapp_number == phone)
                    )
                if conditions:
                    row = s.execute(
                        stmt.where(or_(*conditions)).order_by(family_members.c.id.desc()).limit(1)
                    ).first()
            if row is None:
                raise NotFoundError("Family member not found", code="member_not_found")

            removed = _to_member(row)
            s.execute(delete(family_members).where(family_members.c.id == row.id))

        log_event(
            "info",
            "family.member_removed",
            owner_id=owner.id,
            user_id=removed.member_id,
            event_type=FamilyAction.REMOVED,
            extra={"relation_id": removed.relation_id},
        )
        if removed.phone:
            self._notify(removed.phone, removed.name, owner.name, FamilyAction.REMOVED)
        return removed

    def leave(self, member_ref: UserRef) -> int:
        """
        Drop every membership that references the member.

        Raises:
            NotFoundError: unknown user, or the user belongs to no family
        """
        with self.db.session() as s:
            member = self.identity.require(member_ref, session=s)
            conditions = [family_members.c.member_id == member.id]
            if member.phone:
                conditions.append(
                    and_(family_members.c.member_id.is_(None), family_members.c.whatsapp_number == member.phone)
                )
            removed = s.execute(delete(family_members).where(or_(*conditions))).rowcount or 0
            if not removed:
                raise NotFoundError("User is not a member of any family", code="not_a_member")

        log_event("info", "family.member_left", user_id=member.id, extra={"removed": removed})
        return removed

    def confirm_whatsapp(self, user_ref: UserRef, raw_phone: Optional[str], *, session=None) -> LinkResult:
        """
        Bind a confirmed WhatsApp number to a user and attach pending invites.

        An invite placeholder holding the same number is released; a real
        account holding it is a conflict.

        Raises:
            ValidationError: bad phone
            NotFoundError: unknown user
            ConflictError: number belongs to another account
        """
        phone = require_phone(raw_phone)
        now = utc_now()
        try:
            with self.db.session_or(session) as s:
                user = self.identity.require(user_ref, session=s)
                linked = 0

                holder = self.identity.by_phone(phone, session=s)
                if holder is not None and holder.id != user.id:
                    if not holder.is_placeholder:
                        raise ConflictError("Phone already linked to another account", code="phone_in_use")
                    s.execute(
                        update(users)
                        .where(users.c.id == holder.id)
                        .values(phone=None, status=UserStatus.MERGED)
                    )
                    linked += self._rebind(s, user, member_ids=[holder.id])

                s.execute(
                    update(users)
                    .where(users.c.id == user.id)
                    .values(phone=phone, status=UserStatus.ACTIVE, verified_at=now)
                )
                linked += self._bind_pending(s, user, phone)
        except IntegrityError as exc:
            raise ConflictError("Phone already linked to another account", code="phone_in_use") from exc

        log_event("info", "family.whatsapp_confirmed", user_id=user.id, extra={"linked_count": linked})
        return LinkResult(user_id=user.id, phone=phone, linked_count=linked)

    def _bind_pending(self, s, user: User, phone: str) -> int:
        rows = s.execute(
            select(family_members.c.id, family_members.c.owner_id)
            .where(family_members.c.member_id.is_(None))
            .where(family_members.c.whatsapp_number == phone)
        ).all()
        return self._attach(s, user, rows)

    def _rebind(self, s, user: User, member_ids: List[int]) -> int:
        rows = s.execute(
            select(family_members.c.id, family_members.c.owner_id)
            .where(family_members.c.member_id.in_(member_ids))
        ).all()
        return self._attach(s, user, rows)

    def _attach(self, s, user: User, rows) -> int:
        attached = 0
        for row in rows:
            already = s.execute(
                select(family_members.c.id)
                .where(family_members.c.owner_id == row.owner_id)
                .where(family_members.c.member_id == user.id)
            ).first()
            if row.owner_id == user.id or already:
                s.execute(delete(family_members).where(family_members.c.id == row.id))
                continue
            s.execute(
                update(family_members)
                .where(family_members.c.id == row.id)
                .values(member_id=user.id)
            )
            attached += 1
        return attached
