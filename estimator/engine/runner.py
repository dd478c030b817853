# estimator/engine/runner.py
"""
One pricing run: load context, extract, fuse, evaluate, decide, persist, notify.

Signal-quality problems are recovered locally and explained in the notes.
Only a failed write to the store fails the run.
"""
from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, Set

import structlog

from estimator.core.errors import (
    ConfigurationMissing,
    InvalidPricingConfig,
    PersistenceFailure,
    QuoteNotFound,
)
from estimator.core.logging_config import job_log_context
from estimator.engine.config import CONFIG_INVALID_NOTE, CONFIG_MISSING_NOTE, load_pricing_config
from estimator.engine.context import JobContext, PipelineState
from estimator.pricing.evaluator import (
    AddonContext,
    CrossServiceEstimate,
    Evaluation,
    JobData,
    evaluate,
    evaluate_cross_service,
)
from estimator.pricing.fallback import STATUS_SENT, FallbackDecision, decide
from estimator.pricing.fusion import fuse
from estimator.pricing.matching import build_searchable_text, detect_cross_services, match_catalog_items
from estimator.pricing.signals import FusedSignals
from estimator.pricing.trace import PricingTrace, TraceKind
from estimator.schemas.jobs import JobResult, QuoteJob
from estimator.schemas.pricing_config import (
    AISignalSource,
    FormFieldSource,
    PricingConfiguration,
)
from estimator.schemas.service import answers_by_field
from estimator.services.email import EmailError, QuoteNotifier, QuoteReadyMessage
from estimator.services.inference import (
    ExtractionContext,
    ExtractionResult,
    InferenceClient,
    extract_or_default,
)
from estimator.services.quote_store import QuoteContext, QuoteRecord, QuoteStore
from estimator.services.tax import format_money

logger = structlog.get_logger(__name__)


def _log(state: PipelineState, level: str, msg: str, **fields: Any) -> None:
    getattr(logger, level)(msg, trace_id=state.context.trace_id, **fields)


def referenced_signal_keys(config: PricingConfiguration, trace: PricingTrace) -> Set[str]:
    """Signal keys that triggered work steps depend on."""
    by_id = {s.id: s for s in config.work_steps}
    keys: Set[str] = set()
    for entry in trace.of_type(TraceKind.WORK_STEP):
        keys.update(k for k, _ in entry.signals_used)
        step = by_id.get(entry.id or "")
        if step is None:
            continue
        if step.trigger_signal:
            keys.add(step.trigger_signal)
        src = step.quantity_source
        if isinstance(src, AISignalSource):
            keys.add(src.signal_key)
        elif isinstance(src, FormFieldSource):
            keys.add(src.field_id)
    return keys


def _dedupe(notes: Iterable[str]) -> List[str]:
    out: List[str] = []
    for n in notes:
        if n and n not in out:
            out.append(n)
    return out


class QuotePipeline:
    def __init__(
        self,
        store: QuoteStore,
        inference: InferenceClient,
        notifier: Optional[QuoteNotifier] = None,
    ):
        self.store = store
        self.inference = inference
        self.notifier = notifier

    def run(self, job: QuoteJob, *, final_attempt: bool = False) -> JobResult:
        """
        Price one quote. ExtractionRateLimited propagates (unless final_attempt)
        so the worker can retry with a longer delay.
        """
        state = PipelineState(context=JobContext.from_job(job))
        with job_log_context(job.quote_id, job.tenant_id, job.retry_count):
            return self._run(state, final_attempt)

    def _run(self, state: PipelineState, final_attempt: bool) -> JobResult:
        ctx = state.context
        _log(state, "info", "pipeline_start")

        try:
            qc = self.store.load_context(ctx.quote_id)
        except QuoteNotFound as e:
            return self._fail(state, "load_context", str(e), retryable=False)
        except PersistenceFailure as e:
            return self._fail(state, "load_context", str(e), retryable=True)

        pricing = self._pricing_config(state, qc)
        answers = answers_by_field(qc.request.answers)

        extraction = extract_or_default(
            self.inference,
            qc.request.asset_urls,
            ExtractionContext(
                service_name=qc.service.name,
                description=qc.request.description,
                form_answers=answers,
                expected_signals=[e.model_dump() for e in qc.service.expected_signals],
                addon_ids=[a.id for a in pricing.addons],
                catalog_item_names=[i.name for i in pricing.item_catalog],
            ),
            raise_rate_limited=not final_attempt,
        )
        for warning in extraction.warnings:
            state.note(warning)

        fused = fuse(
            extraction.to_signals(),
            qc.request.answers,
            qc.service.widget_fields,
            qc.service.expected_signals,
            customer_notes=qc.request.description,
            legacy_confidence=extraction.overall_confidence,
        )
        _log(
            state,
            "info",
            "signals_fused",
            signals=len(fused),
            conflicts=len(fused.conflicts),
            overall_confidence=round(fused.overall_confidence, 3),
        )

        free_text = build_searchable_text(qc.request.description, answers)
        evaluation = self._evaluate(qc, pricing, fused, answers, extraction, free_text)
        cross = self._cross_services(qc, fused, extraction, free_text)

        decision = decide(
            qc.service.policy,
            fused,
            evaluation.price.total,
            referenced_signal_keys(pricing, evaluation.trace),
            pricing.site_visit_rules,
            extraction.site_visit_reason if extraction.site_visit_recommended else None,
            currency=qc.tenant.currency,
        )

        price = evaluation.price
        price.notes = _dedupe(state.notes + fused.notes + price.notes + list(decision.notes))
        record = QuoteRecord(
            status=decision.status_override,
            price_breakdown=self._price_payload(evaluation, decision, fused, cross),
            pricing_trace=evaluation.trace.to_dict(),
            signals_snapshot=fused.snapshot(),
        )

        try:
            self.store.save_result(ctx.quote_id, record)
        except (PersistenceFailure, QuoteNotFound) as e:
            return self._fail(state, "save_result", str(e), retryable=isinstance(e, PersistenceFailure))

        if record.status == STATUS_SENT:
            self._notify(state, qc, evaluation, decision)

        _log(state, "info", "pipeline_succeeded", status=record.status, total=str(price.total))
        return JobResult(
            success=True,
            status=record.status,
            price=record.price_breakdown,
            trace=record.pricing_trace,
        )

    # --- steps ---

    def _pricing_config(self, state: PipelineState, qc: QuoteContext) -> PricingConfiguration:
        try:
            return load_pricing_config(qc.pricing_raw, service_id=qc.service.id)
        except ConfigurationMissing:
            _log(state, "warning", "pricing_config_missing", service_id=qc.service.id)
            state.note(CONFIG_MISSING_NOTE)
        except InvalidPricingConfig as e:
            _log(state, "error", "pricing_config_invalid", service_id=qc.service.id, errors=e.meta.get("errors"))
            state.note(CONFIG_INVALID_NOTE)
        return PricingConfiguration.empty()

    def _evaluate(
        self,
        qc: QuoteContext,
        pricing: PricingConfiguration,
        fused: FusedSignals,
        answers: Dict[str, Any],
        extraction: ExtractionResult,
        free_text: str,
    ) -> Evaluation:
        dims = extraction.dimensions
        job = JobData(
            form_quantity=qc.request.job_quantity,
            customer_stated_quantity=extraction.customer_stated_quantity,
            estimated_quantity=dims.value if dims is not None else None,
            estimated_is_estimate=dims.is_estimate if dims is not None else True,
            matched_items=tuple(match_catalog_items(extraction.to_detected_items(), pricing.item_catalog)),
        )
        return evaluate(
            pricing,
            fused,
            answers,
            job,
            qc.tenant.tax,
            qc.tenant.currency,
            AddonContext(
                free_text=free_text,
                already_detected_ids=tuple(extraction.detected_addon_ids),
                scope=qc.service.scope,
            ),
        )

    def _cross_services(
        self,
        qc: QuoteContext,
        fused: FusedSignals,
        extraction: ExtractionResult,
        free_text: str,
    ) -> List[CrossServiceEstimate]:
        out: List[CrossServiceEstimate] = []
        by_id = {s.id: s for s in qc.other_services}
        for match in detect_cross_services(free_text, qc.other_services):
            estimate = evaluate_cross_service(
                by_id[match.service_id],
                fused.overall_confidence,
                extraction.customer_stated_quantity,
                qc.tenant.tax,
                qc.tenant.currency,
            )
            if estimate is not None:
                out.append(estimate)
        return out

    @staticmethod
    def _price_payload(
        evaluation: Evaluation,
        decision: FallbackDecision,
        fused: FusedSignals,
        cross: List[CrossServiceEstimate],
    ) -> Dict[str, Any]:
        payload = evaluation.price.to_dict()
        payload["confidence"] = round(fused.overall_confidence, 4)
        payload["range"] = decision.price_range.to_dict() if decision.price_range else None
        payload["site_visit_recommended"] = decision.site_visit_recommended
        payload["fallback"] = decision.to_dict()
        payload["cross_services"] = [c.to_dict() for c in cross]
        return payload

    def _notify(
        self,
        state: PipelineState,
        qc: QuoteContext,
        evaluation: Evaluation,
        decision: FallbackDecision,
    ) -> None:
        if self.notifier is None or not qc.request.customer_email:
            _log(state, "info", "notification_skipped")
            return
        currency = qc.tenant.currency
        rng = decision.price_range
        total_display = (
            f"{format_money(rng.low, currency)} - {format_money(rng.high, currency)}"
            if rng is not None
            else format_money(evaluation.price.total, currency)
        )
        message = QuoteReadyMessage(
            to=qc.request.customer_email,
            customer_name=qc.request.customer_name or "there",
            business_name=qc.tenant.name,
            service_name=qc.service.name,
            total_display=total_display,
            quote_url=self.notifier.quote_url(qc.quote_token),
        )
        try:
            self.notifier.send_quote_ready(message, quote_id=qc.quote_id)
        except EmailError as e:
            # pricing result is already committed
            _log(state, "warning", "notification_failed", error=str(e))

    def _fail(self, state: PipelineState, step: str, error: str, *, retryable: bool) -> JobResult:
        _log(state, "error", "pipeline_failed", failure_step=step, error=error, retryable=retryable)
        return JobResult(success=False, error=error, retryable=retryable, failure_step=step)
