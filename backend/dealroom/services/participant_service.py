"""
Deal and participant roster management
"""
from typing import List, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from dealroom.core.errors import NotFoundError, ValidationError
from dealroom.core.logging_config import LoggingConfig
from dealroom.core.utils import normalize_currency, utc_now
from dealroom.models.deal import Deal, DealParticipant, ParticipantRole

logger = LoggingConfig.get_logger(__name__)


class ParticipantService:
    """Local view of the participant directory: ids and roles per deal"""

    def __init__(self, db: Session):
        self.db = db

    def create_deal(
        self,
        name: str,
        currency: Optional[str] = None,
        admin_id: Optional[str] = None
    ) -> Deal:
        """
        Create a deal, optionally seeding its first admin.

        Raises:
            ValidationError: empty name or invalid currency code
        """
        if not name or not name.strip():
            raise ValidationError("Deal name is required", reason="empty_name", details={"field": "name"})

        deal = Deal(name=name.strip(), currency=normalize_currency(currency))
        self.db.add(deal)
        self.db.flush()
        if admin_id:
            self.db.add(DealParticipant(
                deal_id=deal.id,
                participant_id=admin_id,
                role=ParticipantRole.ADMIN.value,
            ))
        self.db.commit()
        self.db.refresh(deal)

        logger.info(f"Created deal {deal.id}", extra={"deal_id": str(deal.id), "currency": deal.currency})
        return deal

    def get_deal(self, deal_id: UUID) -> Deal:
        deal = self.db.get(Deal, deal_id)
        if not deal:
            raise NotFoundError(f"Deal {deal_id} not found", details={"deal_id": deal_id})
        return deal

    def add_participant(
        self,
        deal_id: UUID,
        participant_id: str,
        role: str = ParticipantRole.MEMBER.value
    ) -> DealParticipant:
        """Add a participant, or re-activate one who left"""
        self.get_deal(deal_id)
        if not participant_id or not str(participant_id).strip():
            raise ValidationError("participant_id is required", reason="empty_participant", details={"field": "participant_id"})
        try:
            role = ParticipantRole(role).value
        except ValueError:
            raise ValidationError(
                f"Unknown participant role {role!r}",
                reason="invalid_role",
                details={"field": "role", "allowed": [r.value for r in ParticipantRole]}
            )

        membership = self._membership(deal_id, participant_id)
        if membership is None:
            membership = DealParticipant(deal_id=deal_id, participant_id=participant_id, role=role)
            self.db.add(membership)
        else:
            membership.role = role
            membership.is_active = True
            membership.left_at = None

        self.db.commit()
        self.db.refresh(membership)
        logger.info(
            f"Participant {participant_id} joined deal {deal_id} as {role}",
            extra={"deal_id": str(deal_id), "participant_id": participant_id, "role": role}
        )
        return membership

    def remove_participant(self, deal_id: UUID, participant_id: str) -> DealParticipant:
        """
        Soft-remove a participant.

        Proposals created before the removal keep the participant in their
        approvals snapshot.
        """
        membership = self._membership(deal_id, participant_id)
        if membership is None or not membership.is_active:
            raise NotFoundError(
                f"Participant {participant_id} is not active in deal {deal_id}",
                details={"deal_id": deal_id, "participant_id": participant_id}
            )
        membership.is_active = False
        membership.left_at = utc_now()
        self.db.commit()
        self.db.refresh(membership)
        logger.info(
            f"Participant {participant_id} left deal {deal_id}",
            extra={"deal_id": str(deal_id), "participant_id": participant_id}
        )
        return membership

    def list_participants(self, deal_id: UUID, include_inactive: bool = False) -> List[DealParticipant]:
        query = self.db.query(DealParticipant).filter(DealParticipant.deal_id == deal_id)
        if not include_inactive:
            query = query.filter(DealParticipant.is_active.is_(True))
        return query.order_by(DealParticipant.joined_at).all()

    def list_participant_ids(self, deal_id: UUID) -> List[str]:
        return [p.participant_id for p in self.list_participants(deal_id)]

    def is_member(self, deal_id: UUID, participant_id: Optional[str]) -> bool:
        membership = self._membership(deal_id, participant_id) if participant_id else None
        return bool(membership and membership.is_active)

    def is_admin(self, deal_id: UUID, participant_id: Optional[str]) -> bool:
        membership = self._membership(deal_id, participant_id) if participant_id else None
        return bool(
            membership
            and membership.is_active
            and membership.role == ParticipantRole.ADMIN.value
        )

    def require_member(self, deal_id: UUID, participant_id: Optional[str], field: str = "participant_id"):
        if not self.is_member(deal_id, participant_id):
            raise ValidationError(
                f"{participant_id!r} is not an active participant of deal {deal_id}",
                reason="not_a_participant",
                details={"field": field, "deal_id": deal_id, "participant_id": participant_id}
            )

    def _membership(self, deal_id: UUID, participant_id: str) -> Optional[DealParticipant]:
        return self.db.query(DealParticipant).filter(
            DealParticipant.deal_id == deal_id,
            DealParticipant.participant_id == participant_id
        ).first()
