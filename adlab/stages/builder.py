# builder.py
from __future__ import annotations

import logging
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from ..config import (
    DEFAULT_LINK_URL,
    DEFAULT_TARGETING,
    MIN_VARIANTS,
    PLATFORM_MIN_DAILY_BUDGET,
    SIGNED_URL_DEFAULT_TTL_SECONDS,
    Settings,
)
from ..infrastructure.creative_storage import AssetSigner, CreativeSource
from ..infrastructure.error_handling import (
    BuildFailure,
    NotConnectedError,
    RemoteError,
    ValidationError,
)
from ..infrastructure.storage import Store, is_duplicate_key
from ..integrations.meta_client import MetaClient
from ..integrations.slack import alert_budget_clamped, alert_build_result
from ..models import (
    BuildRequest,
    BuildResult,
    Creative,
    Experiment,
    ExperimentStatus,
    Owner,
    Variant,
    VariantOutcome,
)
from ..rules.budget import plan_daily_budget
from ..rules.vocabulary import map_call_to_action, map_objective, optimization_goal_for

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BuilderConfig:
    platform_min_daily: float = PLATFORM_MIN_DAILY_BUDGET
    max_parallel_variants: int = 4
    variant_timeout_sec: float = 120.0
    signed_url_ttl_sec: int = SIGNED_URL_DEFAULT_TTL_SECONDS
    default_link_url: str = DEFAULT_LINK_URL
    default_targeting: Dict[str, Any] = field(default_factory=lambda: dict(DEFAULT_TARGETING))
    upload_images: bool = True
    currency: str = "USD"

    @classmethod
    def from_settings(cls, settings: Settings) -> "BuilderConfig":
        b = settings.builder
        return cls(
            platform_min_daily=settings.platform_min_daily_budget,
            max_parallel_variants=b.max_parallel_variants,
            variant_timeout_sec=b.variant_timeout_sec,
            signed_url_ttl_sec=b.signed_url_ttl_sec,
            default_link_url=b.default_link_url,
            default_targeting=dict(b.default_targeting),
            upload_images=b.upload_images,
            currency=settings.currency,
        )


class ExperimentBuilder:
    """
    Turns a build request into campaign -> ad set -> (creative, ad) per variant.

    Campaign and ad set are created in order and are fatal on failure. Variants
    are independent: each one's outcome is recorded on its own, a failed variant
    never rolls back its siblings.
    """

    def __init__(
        self,
        store: Store,
        creatives: CreativeSource,
        signer: AssetSigner,
        client_factory: Callable[[Owner], MetaClient],
        config: Optional[BuilderConfig] = None,
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
    ) -> None:
        self.store = store
        self.creatives = creatives
        self.signer = signer
        self.client_factory = client_factory
        self.cfg = config or BuilderConfig()
        self.id_factory = id_factory

    # ------------------------- validation -------------------------

    def _validate(self, req: BuildRequest) -> Tuple[Owner, List[Creative]]:
        ids = list(req.creative_ids)
        if len(ids) < MIN_VARIANTS:
            raise ValidationError(f"an experiment needs at least {MIN_VARIANTS} creatives, got {len(ids)}")
        if len(set(ids)) != len(ids):
            raise ValidationError("creative ids must be distinct")
        if not (req.name or "").strip():
            raise ValidationError("experiment name is required")

        owner = self.store.get_owner(req.owner_id)
        if owner is None or not owner.access_token or not owner.ad_account_id:
            raise NotConnectedError(f"owner {req.owner_id} has no connected ads account")
        if not owner.page_id:
            raise NotConnectedError(f"owner {req.owner_id} has no connected page")
        if not owner.token_valid:
            raise NotConnectedError(f"owner {req.owner_id} must reconnect: ads credential expired")

        creatives: List[Creative] = []
        for cid in ids:
            c = self.creatives.get_creative(cid)
            if c is None or c.owner_id != req.owner_id:
                raise ValidationError(f"creative {cid} not found for owner {req.owner_id}")
            creatives.append(c)
        return owner, creatives

    # ------------------------- build -------------------------

    def build(self, req: BuildRequest) -> BuildResult:
        owner, creatives = self._validate(req)

        if req.request_key:
            existing = self.store.find_by_request_key(req.owner_id, req.request_key)
            if existing is not None:
                logger.info("Build %s already done as experiment %s", req.request_key, existing.id)
                return self._result_from_store(existing, reused=True)

        objective = map_objective(req.objective)
        goal = optimization_goal_for(objective)
        plan = plan_daily_budget(req.budget_total, req.duration_days, self.cfg.platform_min_daily)
        warnings: List[str] = []
        if plan.clamped:
            warnings.append(
                f"daily budget raised from {plan.raw:.2f} to platform minimum {plan.daily:.2f}; "
                f"total spend will exceed {req.budget_total:.2f}"
            )
            alert_budget_clamped(req.name, plan.raw, plan.daily, self.cfg.currency)

        client = self.client_factory(owner)
        audience = dict(req.audience) if req.audience else dict(self.cfg.default_targeting)

        try:
            campaign_id = client.create_campaign(f"[AB] {req.name}", objective)
        except RemoteError as e:
            logger.error("Campaign creation failed for %s: %s", req.name, e)
            raise BuildFailure("campaign", e) from e

        try:
            adset_id = client.create_adset(
                campaign_id,
                f"{req.name} - Ad Set",
                plan.daily,
                targeting=audience,
                optimization_goal=goal,
            )
        except RemoteError as e:
            logger.error("Ad set creation failed under campaign %s: %s", campaign_id, e)
            orphan = self._abandon_campaign(client, owner.owner_id, campaign_id, e)
            raise BuildFailure("adset", e, orphaned_campaign_id=orphan) from e

        outcomes = self._create_variants(
            client, owner.owner_id, adset_id, req.name, list(enumerate(creatives, start=1)),
        )

        exp = Experiment(
            id=self.id_factory(),
            owner_id=req.owner_id,
            name=req.name,
            variant_creative_ids=tuple(c.creative_id for c in creatives),
            objective=objective,
            optimization_goal=goal,
            budget_total=float(req.budget_total),
            duration_days=int(req.duration_days),
            daily_budget=plan.daily,
            audience=audience,
            status=ExperimentStatus.CREATED,
            external_campaign_id=campaign_id,
            external_adset_id=adset_id,
            request_key=req.request_key,
        )
        variants = [
            Variant(
                experiment_id=exp.id,
                creative_id=o.creative_id,
                position=o.position,
                external_creative_id=o.external_creative_id,
                external_ad_id=o.external_ad_id,
                creation_error=o.error,
            )
            for o in outcomes
        ]
        try:
            saved = self.store.insert_experiment(exp, variants)
        except Exception as e:
            if req.request_key and is_duplicate_key(e):
                # lost a race with an identical request; keep the first one
                self.store.enqueue_cleanup(campaign_id, "campaign", owner.owner_id, reason=f"duplicate build {req.request_key}")
                existing = self.store.find_by_request_key(req.owner_id, req.request_key)
                if existing is not None:
                    return self._result_from_store(existing, reused=True)
            logger.error("Persisting experiment for campaign %s failed: %s", campaign_id, e)
            raise BuildFailure("persist", e, orphaned_campaign_id=campaign_id) from e

        result = BuildResult(
            experiment=saved,
            succeeded=[o for o in outcomes if o.ok],
            failed=[o for o in outcomes if not o.ok],
            budget=plan,
            warnings=warnings,
        )
        if result.status == "degraded":
            result.warnings.append("fewer than two variants were created; the experiment cannot compare creatives yet")
        self.store.log(
            entity_type="experiment",
            entity_id=saved.id,
            action="BUILD",
            level="info" if result.status == "ok" else "warn",
            reason=result.status,
            meta={
                "campaign_id": campaign_id,
                "adset_id": adset_id,
                "succeeded": len(result.succeeded),
                "failed": len(result.failed),
                "daily_budget": plan.daily,
                "clamped": plan.clamped,
            },
        )
        alert_build_result(
            req.name, result.status, len(result.succeeded), len(result.failed),
            [f"#{o.position} {o.creative_id}: {o.error}" for o in result.failed],
        )
        logger.info(
            "Experiment %s built (%s): %d succeeded, %d failed",
            saved.id, result.status, len(result.succeeded), len(result.failed),
        )
        return result

    def _abandon_campaign(self, client: MetaClient, owner_id: str, campaign_id: str, cause: Exception) -> Optional[str]:
        """Delete a campaign left without an ad set. Returns its id if it is still orphaned."""
        try:
            client.delete_object(campaign_id)
            logger.info("Deleted orphaned campaign %s", campaign_id)
            return None
        except RemoteError as e:
            logger.warning("Could not delete orphaned campaign %s (%s); queued for cleanup", campaign_id, e)
            self.store.enqueue_cleanup(campaign_id, "campaign", owner_id, reason=f"adset failed: {cause}")
            return campaign_id

    # ------------------------- variants -------------------------

    def _create_variant(
        self,
        client: MetaClient,
        adset_id: str,
        exp_name: str,
        position: int,
        creative: Creative,
        external_creative_id: Optional[str] = None,
    ) -> VariantOutcome:
        ext_creative = external_creative_id
        try:
            if ext_creative is None:
                url = self.signer.sign(creative.asset_ref, self.cfg.signed_url_ttl_sec)
                image_hash = client.upload_image(url) if self.cfg.upload_images else None
                ext_creative = client.create_ad_creative(
                    f"{exp_name} - V{position}",
                    headline=creative.headline,
                    body=creative.body,
                    link_url=creative.link_url or self.cfg.default_link_url,
                    cta=map_call_to_action(creative.cta),
                    image_url=None if image_hash else url,
                    image_hash=image_hash,
                )
            ad_id = client.create_ad(adset_id, f"{exp_name} - V{position}", ext_creative)
        except Exception as e:
            # any failure stays scoped to this variant
            logger.warning("Variant #%d (%s) failed: %s", position, creative.creative_id, e)
            return VariantOutcome(
                creative_id=creative.creative_id,
                position=position,
                external_creative_id=ext_creative,
                error=f"{type(e).__name__}: {e}",
            )
        return VariantOutcome(
            creative_id=creative.creative_id,
            position=position,
            external_creative_id=ext_creative,
            external_ad_id=ad_id,
        )

    def _create_variants(
        self,
        client: MetaClient,
        owner_id: str,
        adset_id: str,
        exp_name: str,
        items: Sequence[Tuple[int, Creative]],
        existing_creatives: Optional[Dict[str, str]] = None,
    ) -> List[VariantOutcome]:
        existing_creatives = existing_creatives or {}
        results: Dict[int, VariantOutcome] = {}
        timed_out: Dict[int, str] = {}
        lock = threading.Lock()

        def _late(pos: int, fut: Future) -> None:
            # an ad finished after its deadline; it exists remotely but is not recorded
            with lock:
                if pos not in timed_out:
                    return
            out = fut.result()
            if out.external_ad_id:
                self.store.enqueue_cleanup(out.external_ad_id, "ad", owner_id, reason="variant finished after timeout")

        pool = ThreadPoolExecutor(
            max_workers=max(1, min(self.cfg.max_parallel_variants, len(items))),
            thread_name_prefix="variant",
        )
        futures: Dict[Future, Tuple[int, Creative]] = {}
        try:
            for pos, creative in items:
                fut = pool.submit(
                    self._create_variant, client, adset_id, exp_name, pos, creative,
                    existing_creatives.get(creative.creative_id),
                )
                futures[fut] = (pos, creative)
            done, _ = wait(list(futures), timeout=self.cfg.variant_timeout_sec)
            for fut, (pos, creative) in futures.items():
                if fut in done:
                    results[pos] = fut.result()
                    continue
                with lock:
                    timed_out[pos] = creative.creative_id
                fut.add_done_callback(lambda f, p=pos: _late(p, f))
                results[pos] = VariantOutcome(
                    creative_id=creative.creative_id,
                    position=pos,
                    external_creative_id=existing_creatives.get(creative.creative_id),
                    error=f"TimeoutError: variant not created within {self.cfg.variant_timeout_sec:.0f}s",
                )
        finally:
            pool.shutdown(wait=False, cancel_futures=True)
        return [results[pos] for pos in sorted(results)]

    # ------------------------- retry -------------------------

    def retry_failed_variants(self, experiment_id: str) -> BuildResult:
        """Re-attempt variants without an ad. Variants that already have one are never recreated."""
        exp = self.store.get_experiment(experiment_id)
        if exp is None:
            raise ValidationError(f"experiment {experiment_id} not found")
        if exp.status not in (ExperimentStatus.CREATED, ExperimentStatus.ACTIVE, ExperimentStatus.PAUSED):
            raise ValidationError(f"cannot add variants to a {exp.status.value} experiment")
        if not exp.external_adset_id:
            raise ValidationError(f"experiment {exp.id} has no ad set")
        owner = self.store.get_owner(exp.owner_id)
        if owner is None or not owner.connected:
            raise NotConnectedError(f"owner {exp.owner_id} is not connected")

        variants = self.store.list_variants(exp.id)
        pending = [v for v in variants if not v.created]
        if not pending:
            return self._result_from_store(exp)

        items: List[Tuple[int, Creative]] = []
        for v in pending:
            c = self.creatives.get_creative(v.creative_id)
            if c is None:
                self.store.record_variant_outcome(exp.id, v.creative_id, error="creative no longer exists")
                continue
            items.append((v.position, c))

        client = self.client_factory(owner)
        outcomes = self._create_variants(
            client, owner.owner_id, exp.external_adset_id, exp.name, items,
            existing_creatives={v.creative_id: v.external_creative_id for v in pending if v.external_creative_id},
        )
        for o in outcomes:
            self.store.record_variant_outcome(
                exp.id, o.creative_id,
                external_creative_id=o.external_creative_id,
                external_ad_id=o.external_ad_id,
                error=o.error,
            )
        self.store.log(
            entity_type="experiment",
            entity_id=exp.id,
            action="RETRY_VARIANTS",
            meta={"attempted": len(outcomes), "succeeded": sum(1 for o in outcomes if o.ok)},
        )
        return self._result_from_store(exp)

    def _result_from_store(self, exp: Experiment, reused: bool = False) -> BuildResult:
        outcomes = [
            VariantOutcome(
                creative_id=v.creative_id,
                position=v.position,
                external_creative_id=v.external_creative_id,
                external_ad_id=v.external_ad_id,
                error=None if v.created else (v.creation_error or "not created"),
            )
            for v in self.store.list_variants(exp.id)
        ]
        return BuildResult(
            experiment=self.store.get_experiment(exp.id) or exp,
            succeeded=[o for o in outcomes if o.ok],
            failed=[o for o in outcomes if not o.ok],
            reused=reused,
        )
