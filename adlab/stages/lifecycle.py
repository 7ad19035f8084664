from __future__ import annotations

import logging
from datetime import date
from typing import Callable, Dict, FrozenSet, Optional

from ..config import MIN_VARIANTS
from ..infrastructure.error_handling import (
    InvalidTransitionError,
    RemoteError,
    ValidationError,
)
from ..infrastructure.storage import Store
from ..integrations.meta_client import MetaClient
from ..models import REMOTE_STATUS, Experiment, ExperimentStatus, Owner
from ..utils import Timekit

logger = logging.getLogger(__name__)

S = ExperimentStatus

ALLOWED_TRANSITIONS: Dict[ExperimentStatus, FrozenSet[ExperimentStatus]] = {
    S.DRAFT: frozenset({S.CREATED}),
    S.CREATED: frozenset({S.ACTIVE}),
    S.ACTIVE: frozenset({S.PAUSED, S.COMPLETED, S.ARCHIVED}),
    S.PAUSED: frozenset({S.ACTIVE, S.COMPLETED, S.ARCHIVED}),
    S.COMPLETED: frozenset({S.ARCHIVED}),
    S.ARCHIVED: frozenset(),
}

WINNER_FROM: FrozenSet[ExperimentStatus] = frozenset({S.ACTIVE, S.PAUSED})


def can_transition(current: ExperimentStatus, target: ExperimentStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


class ExperimentLifecycle:
    """
    Status state machine for experiments.

    Delivery-affecting moves (activate, pause, archive) are sent to the platform
    first and only written locally once the platform accepted them. Local writes
    are compare-and-set on the previous status, so a concurrent sync promotion
    and a user action cannot both win.
    """

    def __init__(
        self,
        store: Store,
        client_factory: Callable[[Owner], MetaClient],
        timekit: Optional[Timekit] = None,
    ) -> None:
        self.store = store
        self.client_factory = client_factory
        self.timekit = timekit or Timekit()

    def _load(self, experiment_id: str) -> Experiment:
        exp = self.store.get_experiment(experiment_id)
        if exp is None:
            raise ValidationError(f"experiment {experiment_id} not found")
        return exp

    def _client_for(self, exp: Experiment) -> MetaClient:
        owner = self.store.get_owner(exp.owner_id)
        if owner is None:
            raise ValidationError(f"owner {exp.owner_id} not found")
        return self.client_factory(owner)

    def transition(self, experiment_id: str, target: ExperimentStatus, *, remote: bool = True) -> Experiment:
        exp = self._load(experiment_id)
        target = ExperimentStatus.parse(target)
        if target == S.COMPLETED:
            raise InvalidTransitionError("use declare_winner to complete an experiment")
        if not can_transition(exp.status, target):
            raise InvalidTransitionError(f"{exp.status.value} -> {target.value} is not allowed")
        if target == S.CREATED and len(exp.variant_creative_ids) < MIN_VARIANTS:
            raise ValidationError(f"an experiment needs at least {MIN_VARIANTS} variants")

        if remote and target in REMOTE_STATUS and exp.external_campaign_id:
            # platform is the source of truth for delivery; a rejection leaves local state untouched
            self._client_for(exp).update_status(exp.external_campaign_id, REMOTE_STATUS[target])

        start = self.timekit.today_account() if target == S.ACTIVE else None
        if not self.store.update_status(exp.id, target, expected=exp.status, start_date=start):
            raise InvalidTransitionError(f"experiment {exp.id} changed concurrently; retry")
        self.store.log(
            entity_type="experiment",
            entity_id=exp.id,
            action="STATUS",
            reason=f"{exp.status.value}->{target.value}",
        )
        logger.info("Experiment %s: %s -> %s", exp.id, exp.status.value, target.value)
        return self._load(exp.id)

    def set_remote_status(self, experiment_id: str, status: str) -> Experiment:
        """User-facing status update; accepts the platform vocabulary ACTIVE / PAUSED / ARCHIVED."""
        wanted = str(status or "").strip().upper()
        reverse = {v: k for k, v in REMOTE_STATUS.items()}
        if wanted not in reverse:
            raise ValidationError(f"status must be one of {sorted(reverse)}, got {status!r}")
        return self.transition(experiment_id, reverse[wanted], remote=True)

    def promote_on_delivery(self, exp: Experiment, day: date) -> bool:
        """Created -> Active once the platform reports the first impressions. Local only."""
        if exp.status != S.CREATED:
            return False
        promoted = self.store.update_status(exp.id, S.ACTIVE, expected=S.CREATED, start_date=day)
        if promoted:
            self.store.log(
                entity_type="experiment",
                entity_id=exp.id,
                action="STATUS",
                reason="created->active (first delivery)",
            )
            logger.info("Experiment %s promoted to active (first impressions on %s)", exp.id, day)
        return promoted

    def declare_winner(self, experiment_id: str, creative_id: str) -> Experiment:
        exp = self._load(experiment_id)
        if creative_id not in exp.variant_creative_ids:
            raise ValidationError(f"creative {creative_id} is not a variant of experiment {exp.id}")
        if exp.status not in WINNER_FROM:
            raise InvalidTransitionError(f"cannot declare a winner while {exp.status.value}")
        ok = self.store.update_status(
            exp.id,
            S.COMPLETED,
            expected=exp.status,
            end_date=self.timekit.today_account(),
            winner_creative_id=creative_id,
        )
        if not ok:
            raise InvalidTransitionError(f"experiment {exp.id} changed concurrently; retry")
        self.store.log(entity_type="experiment", entity_id=exp.id, action="WINNER", reason=creative_id)
        logger.info("Experiment %s completed; winner %s", exp.id, creative_id)
        return self._load(exp.id)

    def delete(self, experiment_id: str) -> bool:
        """Best-effort pause of a live campaign, then cascade-delete local rows."""
        exp = self._load(experiment_id)
        if exp.status == S.ACTIVE and exp.external_campaign_id:
            try:
                self._client_for(exp).update_status(exp.external_campaign_id, "PAUSED")
            except (RemoteError, ValidationError) as e:
                logger.warning("Pause before delete failed for %s (%s); deleting anyway", exp.id, e)
        deleted = self.store.delete_experiment(exp.id)
        if deleted:
            self.store.log(entity_type="experiment", entity_id=exp.id, action="DELETE", level="warn")
        return deleted
