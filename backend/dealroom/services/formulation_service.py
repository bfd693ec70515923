"""
Formulation lifecycle manager
"""
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional
from uuid import UUID

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from dealroom.core.concurrency import aggregate_lock, load_for_update, run_with_retry
from dealroom.core.config import get_settings
from dealroom.core.errors import (DealRoomError, LockedError, NotFoundError, StateError,
                                  ValidationError)
from dealroom.core.logging_config import LoggingConfig
from dealroom.core.metrics import formulation_transitions_total
from dealroom.core.utils import optional_decimal, quantize_percentage, utc_now
from dealroom.lifecycle.formulation import validate_transition
from dealroom.models.deal import Deal
from dealroom.models.domain_event import EventType
from dealroom.models.formulation import (ContributorType, Formulation, FormulationIngredient,
                                         FormulationReview, FormulationStatus, ReviewStatus)
from dealroom.models.ingredient import Ingredient
from dealroom.services.event_service import EventService
from dealroom.services.participant_service import ParticipantService

logger = LoggingConfig.get_logger(__name__)

HUNDRED = Decimal("100")


def _validate_terms(
    ownership_percent: Any = None,
    value_weight: Any = None,
    credit_multiplier: Any = None
) -> Dict[str, Decimal]:
    terms: Dict[str, Decimal] = {}
    ownership = optional_decimal(ownership_percent, "ownership_percent")
    if ownership is not None:
        if ownership < 0 or ownership > HUNDRED:
            raise ValidationError(
                f"ownership_percent must be between 0 and 100, got {ownership}",
                reason="ownership_out_of_range",
                details={"field": "ownership_percent", "value": str(ownership)}
            )
        terms["ownership_percent"] = quantize_percentage(ownership)
    for field, raw in (("value_weight", value_weight), ("credit_multiplier", credit_multiplier)):
        number = optional_decimal(raw, field)
        if number is None:
            continue
        if number <= 0:
            raise ValidationError(
                f"{field} must be positive, got {number}",
                reason="non_positive",
                details={"field": field, "value": str(number)}
            )
        terms[field] = number
    return terms


class FormulationService:
    """Service for formulation composition and lifecycle transitions"""

    def __init__(self, db: Session, events: Optional[EventService] = None):
        self.db = db
        self.events = events or EventService(db)
        self.participants = ParticipantService(db)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_formulation(self, formulation_id: UUID) -> Formulation:
        formulation = self.db.get(Formulation, formulation_id)
        if not formulation:
            raise NotFoundError(f"Formulation {formulation_id} not found", details={"formulation_id": formulation_id})
        return formulation

    def list_formulations(self, deal_id: UUID, status: Optional[str] = None) -> List[Formulation]:
        query = self.db.query(Formulation).filter(Formulation.deal_id == deal_id)
        if status:
            query = query.filter(Formulation.status == status)
        return query.order_by(Formulation.version, Formulation.created_at).all()

    def get_active_formulation(self, deal_id: UUID) -> Optional[Formulation]:
        """The deal's active formulation, read from the database on every call"""
        return self.db.query(Formulation).filter(
            Formulation.deal_id == deal_id,
            Formulation.status == FormulationStatus.ACTIVE.value
        ).first()

    def ownership_report(self, formulation_id: UUID) -> Dict[str, Any]:
        """
        Total ownership of a composition and its deviation from 100%.

        Deviations are reported, never corrected.
        """
        formulation = self.get_formulation(formulation_id)
        total = sum((line.ownership_percent for line in formulation.ingredients), Decimal("0"))
        total = quantize_percentage(total)
        return {
            "formulation_id": formulation.id,
            "line_count": len(formulation.ingredients),
            "total_ownership": total,
            "deviation": total - HUNDRED,
            "balanced": total == HUNDRED,
        }

    # ------------------------------------------------------------------
    # Composition
    # ------------------------------------------------------------------

    def create(
        self,
        deal_id: UUID,
        name: str,
        description: Optional[str] = None,
        created_by: Optional[str] = None
    ) -> Formulation:
        if not self.db.get(Deal, deal_id):
            raise NotFoundError(f"Deal {deal_id} not found", details={"deal_id": deal_id})
        if not name or not name.strip():
            raise ValidationError("Formulation name is required", reason="empty_name", details={"field": "name"})

        formulation = Formulation(
            deal_id=deal_id,
            name=name.strip(),
            description=description,
            version=1,
            status=FormulationStatus.DRAFT.value,
            created_by=created_by,
        )
        self.db.add(formulation)
        self.db.flush()
        self.events.emit(
            EventType.FORMULATION_CREATED, "formulation", formulation.id,
            {"version": formulation.version, "created_by": created_by},
            deal_id=deal_id,
        )
        self.db.commit()
        self.db.refresh(formulation)
        self.events.publish_pending()

        logger.info(
            f"Created formulation {formulation.id} v{formulation.version}",
            extra={"deal_id": str(deal_id), "formulation_id": str(formulation.id)}
        )
        return formulation

    def add_ingredient(
        self,
        formulation_id: UUID,
        ingredient_id: Optional[UUID] = None,
        contributor_id: Optional[str] = None,
        contributor_type: Optional[str] = None,
        ownership_percent: Any = Decimal("0"),
        value_weight: Any = Decimal("1"),
        credit_multiplier: Any = Decimal("1"),
        label: Optional[str] = None
    ) -> FormulationIngredient:
        """
        Add one composition line referencing an ingredient or a contributor.

        Raises:
            LockedError: formulation is active
            StateError: formulation is archived
            ValidationError: no target, bad contributor type or out-of-range terms
        """
        if ingredient_id is None and not contributor_id:
            raise ValidationError(
                "A composition line needs an ingredient_id or a contributor_id",
                reason="missing_target",
                details={"fields": ["ingredient_id", "contributor_id"]}
            )
        if contributor_id:
            try:
                contributor_type = ContributorType(contributor_type or ContributorType.HUMAN.value).value
            except ValueError:
                raise ValidationError(
                    f"Unknown contributor type {contributor_type!r}",
                    reason="invalid_contributor_type",
                    details={"field": "contributor_type", "allowed": [t.value for t in ContributorType]}
                )
        else:
            contributor_type = None

        def _add(formulation: Formulation) -> FormulationIngredient:
            if ingredient_id is not None:
                ingredient = self.db.get(Ingredient, ingredient_id)
                if not ingredient or ingredient.deal_id != formulation.deal_id:
                    raise NotFoundError(
                        f"Ingredient {ingredient_id} not found in deal {formulation.deal_id}",
                        details={"ingredient_id": ingredient_id}
                    )
                if ingredient.is_retired:
                    raise ValidationError(
                        f"Ingredient {ingredient_id} is retired",
                        reason="ingredient_retired",
                        details={"ingredient_id": ingredient_id}
                    )
            terms = _validate_terms(ownership_percent, value_weight, credit_multiplier)
            line = FormulationIngredient(
                formulation_id=formulation.id,
                ingredient_id=ingredient_id,
                contributor_id=contributor_id,
                contributor_type=contributor_type,
                label=label,
                created_at=utc_now(),
                **terms
            )
            self.db.add(line)
            return line

        line = self._write_composition(formulation_id, _add)
        self.db.refresh(line)
        self._log_balance(formulation_id)
        return line

    def update_ingredient_terms(
        self,
        formulation_id: UUID,
        line_id: UUID,
        ownership_percent: Any = None,
        value_weight: Any = None,
        credit_multiplier: Any = None
    ) -> FormulationIngredient:
        def _update(formulation: Formulation) -> FormulationIngredient:
            line = self._get_line(formulation, line_id)
            terms = _validate_terms(ownership_percent, value_weight, credit_multiplier)
            for field, value in terms.items():
                setattr(line, field, value)
            return line

        line = self._write_composition(formulation_id, _update)
        self.db.refresh(line)
        self._log_balance(formulation_id)
        return line

    def remove_ingredient(self, formulation_id: UUID, line_id: UUID):
        def _remove(formulation: Formulation):
            formulation.ingredients.remove(self._get_line(formulation, line_id))

        self._write_composition(formulation_id, _remove)
        logger.info(
            f"Removed composition line {line_id} from formulation {formulation_id}",
            extra={"formulation_id": str(formulation_id), "line_id": str(line_id)}
        )

    # ------------------------------------------------------------------
    # Review
    # ------------------------------------------------------------------

    def submit_for_review(self, formulation_id: UUID, actor: Optional[str] = None) -> Formulation:
        """
        Move a draft into pending_review and open a review for every participant.

        Raises:
            StateError: formulation is not a draft
            ValidationError: no ingredients, or unbalanced ownership under strict policy
        """
        formulation = self.get_formulation(formulation_id)
        self._check_transition(formulation, FormulationStatus.PENDING_REVIEW)
        if formulation.status == FormulationStatus.PENDING_REVIEW.value:
            return formulation

        if not formulation.ingredients:
            raise ValidationError(
                f"Formulation {formulation_id} has no ingredients",
                reason="missing_ingredients",
                details={"formulation_id": formulation_id}
            )
        report = self.ownership_report(formulation_id)
        if not report["balanced"]:
            if get_settings().strict_ownership_on_review:
                raise ValidationError(
                    f"Ownership totals {report['total_ownership']}%, expected 100%",
                    reason="ownership_unbalanced",
                    details={"formulation_id": formulation_id, "total_ownership": str(report["total_ownership"])}
                )
            logger.warning(
                f"Formulation {formulation_id} submitted with ownership {report['total_ownership']}%",
                extra={"formulation_id": str(formulation_id), "deviation": str(report["deviation"])}
            )

        existing = {r.participant_id for r in formulation.reviews}
        for participant_id in self.participants.list_participant_ids(formulation.deal_id):
            if participant_id not in existing:
                formulation.reviews.append(FormulationReview(participant_id=participant_id))

        previous = formulation.status
        formulation.status = FormulationStatus.PENDING_REVIEW.value
        formulation.submitted_at = utc_now()
        self.events.emit(
            EventType.FORMULATION_SUBMITTED, "formulation", formulation.id,
            {"submitted_by": actor, "ownership": report},
            deal_id=formulation.deal_id,
        )
        self.db.commit()
        self.db.refresh(formulation)
        self.events.publish_pending()
        self._record_transition(formulation, previous, actor)
        return formulation

    def submit_review(
        self,
        formulation_id: UUID,
        participant_id: str,
        status: str,
        notes: Optional[str] = None
    ) -> FormulationReview:
        formulation = self.get_formulation(formulation_id)
        if formulation.status != FormulationStatus.PENDING_REVIEW.value:
            raise StateError(
                f"Formulation {formulation_id} is {formulation.status}, not pending_review",
                reason="not_in_review",
                details={"formulation_id": formulation_id, "status": formulation.status}
            )
        try:
            review_status = ReviewStatus(status)
        except ValueError:
            review_status = None
        if review_status in (None, ReviewStatus.PENDING):
            raise ValidationError(
                f"Invalid review status {status!r}",
                reason="invalid_review_status",
                details={"field": "status", "allowed": ["approved", "rejected", "changes_requested"]}
            )

        review = next((r for r in formulation.reviews if r.participant_id == participant_id), None)
        if review is None:
            raise ValidationError(
                f"{participant_id!r} is not a reviewer of formulation {formulation_id}",
                reason="not_a_reviewer",
                details={"formulation_id": formulation_id, "participant_id": participant_id}
            )
        review.status = review_status.value
        review.notes = notes
        review.reviewed_at = utc_now()
        self.db.commit()
        self.db.refresh(review)
        logger.info(
            f"Review {review_status.value} on formulation {formulation_id} by {participant_id}",
            extra={"formulation_id": str(formulation_id), "participant_id": participant_id}
        )
        return review

    def review_summary(self, formulation_id: UUID) -> Dict[str, Any]:
        formulation = self.get_formulation(formulation_id)
        counts = {s.value: 0 for s in ReviewStatus}
        for review in formulation.reviews:
            counts[review.status] = counts.get(review.status, 0) + 1
        return {
            "formulation_id": formulation.id,
            "status": formulation.status,
            "counts": counts,
            "blocking": counts[ReviewStatus.REJECTED.value] + counts[ReviewStatus.CHANGES_REQUESTED.value] > 0,
            "reviews": [
                {
                    "participant_id": r.participant_id,
                    "status": r.status,
                    "notes": r.notes,
                    "reviewed_at": r.reviewed_at,
                }
                for r in formulation.reviews
            ],
        }

    # ------------------------------------------------------------------
    # Activation and archival
    # ------------------------------------------------------------------

    def activate(self, formulation_id: UUID, actor: Optional[str] = None, admin_override: bool = False) -> Formulation:
        """
        Activate a formulation, locking its composition.

        Review is required; a deal admin may skip it from draft with
        ``admin_override``. Any previously active formulation of the deal is
        archived in the same transaction. Re-activating an active formulation
        returns it unchanged.

        Raises:
            StateError: archived, review skipped without override, or blocked by a negative review
            ValidationError: no ingredients
        """
        deal_id = self.get_formulation(formulation_id).deal_id

        def _activate():
            self.events.discard_pending()
            formulation = load_for_update(self.db, Formulation, formulation_id)
            if formulation.status == FormulationStatus.ACTIVE.value:
                return formulation, None

            override = formulation.status == FormulationStatus.DRAFT.value and admin_override
            if override:
                self._check_override(formulation, actor)
            result = validate_transition(formulation.status, FormulationStatus.ACTIVE.value, override=override)
            if not result.allowed:
                reason = "review_required" if formulation.status == FormulationStatus.DRAFT.value else "illegal_transition"
                raise StateError(
                    f"Cannot activate formulation {formulation_id} from {formulation.status}",
                    reason=reason,
                    details={"formulation_id": formulation_id, "transition": result.reason}
                )
            if not formulation.ingredients:
                raise ValidationError(
                    f"Formulation {formulation_id} has no ingredients",
                    reason="missing_ingredients",
                    details={"formulation_id": formulation_id}
                )
            if formulation.status == FormulationStatus.PENDING_REVIEW.value:
                self._check_reviews(formulation)
            self._claim_ingredients(formulation)

            superseded = self.get_active_formulation(formulation.deal_id)
            if superseded is not None:
                self._archive_row(superseded, actor)

            previous = formulation.status
            now = utc_now()
            formulation.status = FormulationStatus.ACTIVE.value
            formulation.activated_at = now
            formulation.activated_by = actor
            formulation.composition_snapshot = self._snapshot(formulation)
            formulation.snapshot_revision = 1
            self.events.emit(
                EventType.FORMULATION_ACTIVATED, "formulation", formulation.id,
                {
                    "activated_by": actor,
                    "admin_override": override,
                    "superseded_formulation_id": superseded.id if superseded else None,
                    "ownership": self.ownership_report(formulation.id),
                },
                deal_id=formulation.deal_id,
            )
            self.db.commit()
            return formulation, (previous, superseded)

        try:
            with aggregate_lock("deal_formulations", deal_id):
                formulation, transition = run_with_retry(self.db, _activate, "formulation", formulation_id)
        except DealRoomError:
            self.db.rollback()
            raise

        self.db.refresh(formulation)
        if transition is None:
            logger.debug(f"Formulation {formulation_id} already active", extra={"formulation_id": str(formulation_id)})
            return formulation

        previous, superseded = transition
        self.events.publish_pending()
        if superseded is not None:
            formulation_transitions_total.labels(from_status="active", to_status="archived").inc()
        self._record_transition(formulation, previous, actor)
        return formulation

    def archive(self, formulation_id: UUID, actor: Optional[str] = None, admin: bool = False) -> Formulation:
        """
        Archive a formulation. Archiving an active one requires ``admin``;
        payouts already made under it are untouched.
        """
        def _archive():
            self.events.discard_pending()
            formulation = load_for_update(self.db, Formulation, formulation_id)
            if formulation is None:
                raise NotFoundError(f"Formulation {formulation_id} not found", details={"formulation_id": formulation_id})
            if formulation.status == FormulationStatus.ARCHIVED.value:
                return formulation, None

            result = validate_transition(formulation.status, FormulationStatus.ARCHIVED.value, override=admin)
            if not result.allowed:
                raise StateError(
                    "Archiving an active formulation requires an admin",
                    reason="admin_required",
                    details={"formulation_id": formulation_id, "transition": result.reason}
                )
            previous = formulation.status
            self._archive_row(formulation, actor)
            self.db.commit()
            return formulation, previous

        formulation, previous = run_with_retry(self.db, _archive, "formulation", formulation_id)
        self.db.refresh(formulation)
        if previous is not None:
            self.events.publish_pending()
            self._record_transition(formulation, previous, actor)
        return formulation

    def create_revision(self, formulation_id: UUID, actor: Optional[str] = None) -> Formulation:
        """
        Clone an active or archived formulation into a new draft.

        The new version number is one past the highest version in the deal.
        """
        source = self.get_formulation(formulation_id)
        if source.status not in (FormulationStatus.ACTIVE.value, FormulationStatus.ARCHIVED.value):
            raise StateError(
                f"Only active or archived formulations can be revised; {formulation_id} is {source.status}",
                reason="not_revisable",
                details={"formulation_id": formulation_id, "status": source.status}
            )

        latest = self.db.query(func.max(Formulation.version)).filter(
            Formulation.deal_id == source.deal_id
        ).scalar() or 0
        revision = Formulation(
            deal_id=source.deal_id,
            name=source.name,
            description=source.description,
            version=latest + 1,
            status=FormulationStatus.DRAFT.value,
            parent_formulation_id=source.id,
            created_by=actor,
        )
        for line in source.ingredients:
            revision.ingredients.append(FormulationIngredient(
                ingredient_id=line.ingredient_id,
                contributor_id=line.contributor_id,
                contributor_type=line.contributor_type,
                label=line.label,
                ownership_percent=line.ownership_percent,
                value_weight=line.value_weight,
                credit_multiplier=line.credit_multiplier,
                created_at=utc_now(),
            ))
        self.db.add(revision)
        self.db.flush()
        self.events.emit(
            EventType.FORMULATION_CREATED, "formulation", revision.id,
            {"version": revision.version, "created_by": actor, "parent_formulation_id": source.id},
            deal_id=source.deal_id,
        )
        self.db.commit()
        self.db.refresh(revision)
        self.events.publish_pending()

        logger.info(
            f"Created revision v{revision.version} of formulation {source.id}",
            extra={"formulation_id": str(revision.id), "parent_formulation_id": str(source.id)}
        )
        return revision

    def refresh_derived_state(self, deal_id: UUID, ingredient_id: Optional[UUID] = None) -> Optional[Formulation]:
        """
        Re-capture the active formulation's snapshot after an approved change.

        Does not commit; runs inside the transaction that resolved the change.
        """
        formulation = self.get_active_formulation(deal_id)
        if formulation is None:
            return None

        formulation.composition_snapshot = self._snapshot(formulation)
        formulation.snapshot_revision = (formulation.snapshot_revision or 0) + 1
        self.events.emit(
            EventType.FORMULATION_REFRESHED, "formulation", formulation.id,
            {"ingredient_id": ingredient_id, "snapshot_revision": formulation.snapshot_revision},
            deal_id=deal_id,
        )
        logger.info(
            f"Refreshed derived state of formulation {formulation.id} (revision {formulation.snapshot_revision})",
            extra={"formulation_id": str(formulation.id), "ingredient_id": str(ingredient_id) if ingredient_id else None}
        )
        return formulation

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _write_composition(self, formulation_id: UUID, change: Callable[[Formulation], Any]) -> Any:
        """
        Apply ``change`` to a freshly locked formulation and commit.

        Touching ``updated_at`` bumps the row version, so a write racing an
        activation in another process fails with StaleDataError and is
        retried against the new status.
        """
        def _write():
            formulation = load_for_update(self.db, Formulation, formulation_id)
            if formulation is None:
                raise NotFoundError(f"Formulation {formulation_id} not found", details={"formulation_id": formulation_id})
            self._ensure_editable(formulation)
            result = change(formulation)
            formulation.updated_at = utc_now()
            self.db.commit()
            return result

        try:
            return run_with_retry(self.db, _write, "formulation", formulation_id)
        except DealRoomError:
            self.db.rollback()
            raise

    def _claim_ingredients(self, formulation: Formulation):
        """Bump referenced ingredient versions so in-flight direct edits of them go stale"""
        ingredients = [line.ingredient for line in formulation.ingredients if line.ingredient is not None]
        if not ingredients:
            return
        table = Ingredient.__table__
        self.db.execute(
            update(table)
            .where(table.c.id.in_([ingredient.id for ingredient in ingredients]))
            .values(version_id=table.c.version_id + 1)
        )
        for ingredient in ingredients:
            self.db.expire(ingredient)

    def _ensure_editable(self, formulation: Formulation):
        if formulation.status == FormulationStatus.ACTIVE.value:
            logger.warning(
                f"Rejected composition change on active formulation {formulation.id}",
                extra={"formulation_id": str(formulation.id)}
            )
            raise LockedError(
                f"Formulation {formulation.id} is active; its composition is locked",
                details={"formulation_id": formulation.id}
            )
        if formulation.status == FormulationStatus.ARCHIVED.value:
            raise StateError(
                f"Formulation {formulation.id} is archived",
                reason="formulation_archived",
                details={"formulation_id": formulation.id}
            )

    def _get_line(self, formulation: Formulation, line_id: UUID) -> FormulationIngredient:
        line = next((item for item in formulation.ingredients if item.id == line_id), None)
        if line is None:
            raise NotFoundError(
                f"Composition line {line_id} not found in formulation {formulation.id}",
                details={"formulation_id": formulation.id, "line_id": line_id}
            )
        return line

    def _check_transition(self, formulation: Formulation, target: FormulationStatus):
        result = validate_transition(formulation.status, target.value)
        if not result.allowed:
            raise StateError(
                f"Cannot move formulation {formulation.id} from {formulation.status} to {target.value}",
                details={"formulation_id": formulation.id, "transition": result.reason}
            )

    def _check_override(self, formulation: Formulation, actor: Optional[str]):
        if not get_settings().allow_draft_activation_override:
            raise StateError(
                "Activation without review is disabled",
                reason="override_disabled",
                details={"formulation_id": formulation.id}
            )
        if not self.participants.is_admin(formulation.deal_id, actor):
            raise StateError(
                "Only a deal admin may activate without review",
                reason="admin_required",
                details={"formulation_id": formulation.id, "actor": actor}
            )

    def _check_reviews(self, formulation: Formulation):
        if not get_settings().block_activation_on_negative_review:
            return
        blocking = [
            r.participant_id for r in formulation.reviews
            if r.status in (ReviewStatus.REJECTED.value, ReviewStatus.CHANGES_REQUESTED.value)
        ]
        if blocking:
            raise StateError(
                f"Formulation {formulation.id} has unresolved negative reviews",
                reason="negative_review",
                details={"formulation_id": formulation.id, "participants": blocking}
            )

    def _archive_row(self, formulation: Formulation, actor: Optional[str]):
        formulation.status = FormulationStatus.ARCHIVED.value
        formulation.archived_at = utc_now()
        formulation.archived_by = actor
        self.events.emit(
            EventType.FORMULATION_ARCHIVED, "formulation", formulation.id,
            {"archived_by": actor},
            deal_id=formulation.deal_id,
        )

    def _snapshot(self, formulation: Formulation) -> Dict[str, Any]:
        lines = []
        for line in formulation.ingredients:
            entry = line.to_dict()
            if line.ingredient is not None:
                entry["ingredient"] = line.ingredient.to_dict()
            lines.append(entry)
        total = sum((line.ownership_percent for line in formulation.ingredients), Decimal("0"))
        return {
            "captured_at": utc_now().isoformat(),
            "total_ownership": str(quantize_percentage(total)),
            "lines": lines,
        }

    def _log_balance(self, formulation_id: UUID):
        report = self.ownership_report(formulation_id)
        if not report["balanced"]:
            logger.debug(
                f"Formulation {formulation_id} ownership at {report['total_ownership']}%",
                extra={"formulation_id": str(formulation_id), "deviation": str(report["deviation"])}
            )

    def _record_transition(self, formulation: Formulation, previous: str, actor: Optional[str]):
        formulation_transitions_total.labels(from_status=previous, to_status=formulation.status).inc()
        logger.info(
            f"Formulation {formulation.id}: {previous} -> {formulation.status}",
            extra={
                "formulation_id": str(formulation.id),
                "deal_id": str(formulation.deal_id),
                "from_status": previous,
                "to_status": formulation.status,
                "actor": actor,
            }
        )
