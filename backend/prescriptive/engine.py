"""
Prescriptive Optimization & Decision Engine (PODSE) — top-level orchestrator.

    request → objectives/constraints (per-run overrides) → scenario sandbox
            → optimization core → guardrails (every candidate) → Pareto frontier
            → explanation → PrescriptiveResponse

Constraint names are checked per run against metric sources, registered
objective ids and decision dimensions. Targeting keys in the request context
(``segment_by``, ``target_attributes``, ``segments``) travel on every
proposed decision so the guardrails can judge them.

The engine listens for NewForecastPublished and keeps the latest forecast per
KPI; a ``revenue`` forecast sets the revenue baseline and centres the demand
factor of the scenario sandbox on its band.

``build_engines()`` wires both orchestrators on one shared event bus.
"""

from __future__ import annotations

import asyncio
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Any

import structlog

from core.config import Settings, get_settings
from core.errors import EngineNotInitializedError
from core.events import (
    Event,
    EventBus,
    GuardrailViolation,
    NewForecastPublished,
    PrescriptionCompleted,
    ScenarioSetGenerated,
    SystemReady,
)
from predictive.engine import PredictiveEngine
from predictive.integration_bridge import IntegrationBridge
from predictive.models_hub import KpiForecast
from prescriptive.constraints import ConstraintManager, ConstraintSpec
from prescriptive.evaluation import DEFAULT_BASELINE_REVENUE, METRIC_SOURCES, EvaluationContext, PolicyEvaluator
from prescriptive.explanation import ExplanationEngine
from prescriptive.guardrails import TARGETING_META_KEYS, GuardrailsEngine
from prescriptive.objectives import ObjectiveRegistry
from prescriptive.optimizer import OptimizationCore, select_best
from prescriptive.pareto import ParetoFrontierBuilder
from prescriptive.scenarios import ScenarioSandbox
from prescriptive.schemas import (
    AuditRef,
    ExplanationPayload,
    ParetoSummary,
    PrescriptiveRequest,
    PrescriptiveResponse,
)
from prescriptive.types import DECISION_DIMENSIONS, ObjectiveSpec, ParetoFrontierMeta, PolicyCandidate

logger = structlog.get_logger()

REVENUE_KPI = "revenue"


@dataclass
class RunRecord:
    run_id: str
    request_id: str
    snapshot_hash: str
    best: PolicyCandidate | None
    candidates: list[PolicyCandidate]
    frontier: ParetoFrontierMeta

    def summary(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "request_id": self.request_id,
            "snapshot_hash": self.snapshot_hash,
            "frontier_size": self.frontier.size,
            "hypervolume": self.frontier.hypervolume,
            "diversity": self.frontier.diversity,
            "best_policy_id": self.best.policy_id if self.best else None,
        }


class PrescriptiveEngine:
    def __init__(
        self,
        bus: EventBus | None = None,
        settings: Settings | None = None,
        bridge: IntegrationBridge | None = None,
        guardrails: GuardrailsEngine | None = None,
        seed: int | None = None,
    ):
        settings = settings or get_settings()
        self.settings = settings
        self.bus = bus or EventBus(history_size=settings.event_history_size)
        self.bridge = bridge
        seed = settings.random_seed if seed is None else seed

        self.objectives = ObjectiveRegistry()
        self.constraints = ConstraintManager()
        self.sandbox = ScenarioSandbox(seed=seed)
        self.optimizer = OptimizationCore(
            max_iterations=settings.optimizer_max_iterations,
            batch_size=settings.optimizer_batch_size,
            max_workers=settings.optimizer_max_workers,
            seed=seed + 1,
        )
        self.guardrails = guardrails or GuardrailsEngine()
        self.explainer = ExplanationEngine(top_k=settings.explanation_top_k)

        self.forecast_context: dict[str, KpiForecast] = {}
        self.latest_forecast_id: str | None = None
        self.initialized = False
        self.runs = 0
        self.last_run: RunRecord | None = None
        # Sandbox/optimizer generators are not thread-safe; runs are serialised
        self._run_lock = threading.Lock()
        self._log = logger.bind(engine="podse")

    def initialize(self) -> None:
        """Idempotent; registers the baseline objectives and budget constraint."""
        if self.initialized:
            return
        self.objectives.register(
            ObjectiveSpec(id="value", type="maximize", weight=0.6, metric_source="revenue_uplift")
        )
        self.objectives.register(
            ObjectiveSpec(id="cost", type="minimize", weight=0.4, metric_source="operational_cost")
        )
        self.constraints.register(ConstraintSpec(id="budget_cap", type="HARD", expression="cost <= 100000"))
        self.bus.subscribe(NewForecastPublished, self._on_forecast_published)
        self.initialized = True

        components = ("objectives", "constraints", "sandbox", "optimizer", "pareto", "guardrails", "explanation")
        self._log.info("podse.initialized", snapshot_hash=self.objectives.hash_snapshot())
        self.bus.publish(SystemReady(engine="podse", components=components))

    def _on_forecast_published(self, event: NewForecastPublished) -> None:
        forecast = event.forecast
        for kpi in forecast.kpis:
            self.forecast_context[kpi.name] = kpi
        self.latest_forecast_id = forecast.forecast_id

    # ── Prescription ─────────────────────────────────────────────────────

    async def prescribe(self, request: PrescriptiveRequest | dict[str, Any]) -> PrescriptiveResponse:
        if not self.initialized:
            raise EngineNotInitializedError("PrescriptiveEngine.initialize() must be called first")
        if not isinstance(request, PrescriptiveRequest):
            request = PrescriptiveRequest.model_validate(request)

        response, events = await asyncio.to_thread(self._run_serialised, request)
        for event in events:
            self.bus.publish(event)
        if self.bridge is not None:
            self.bridge.publish_decision(response)
        return response

    def _run_serialised(self, request: PrescriptiveRequest) -> tuple[PrescriptiveResponse, list[Event]]:
        with self._run_lock:
            return self._run(request)

    def _run(self, request: PrescriptiveRequest) -> tuple[PrescriptiveResponse, list[Event]]:
        started = time.perf_counter()
        run_id = f"RUN_{uuid.uuid4().hex[:12]}"
        log = self._log.bind(request_id=request.request_id, run_id=run_id)

        overrides = {o.id: o.weight_override for o in request.objectives}
        objectives = self.objectives.effective(overrides)
        snapshot_hash = self.objectives.hash_snapshot(objectives)
        aliases = {spec.id: spec.metric_source for spec in self.objectives.list_objectives()}
        constraints = self.constraints.with_overrides(
            request.constraints_override,
            known_names={*METRIC_SOURCES, *aliases, *DECISION_DIMENSIONS},
        )
        targeting = {key: request.context[key] for key in TARGETING_META_KEYS if key in request.context}

        scenario_cfg = request.scenario_config
        samples = (scenario_cfg.samples if scenario_cfg else None) or self.settings.scenario_default_samples
        strategy = (scenario_cfg.strategy if scenario_cfg else None) or self.settings.scenario_default_strategy

        revenue = self.forecast_context.get(REVENUE_KPI)
        demand_band = None
        baseline_revenue = DEFAULT_BASELINE_REVENUE
        if revenue is not None and revenue.p50 > 0:
            baseline_revenue = revenue.p50
            demand_band = (revenue.p10 / revenue.p50, 1.0, revenue.p90 / revenue.p50)

        scenario_set = self.sandbox.generate(request.horizon, strategy, samples, demand_band)
        events: list[Event] = [
            ScenarioSetGenerated(
                scenario_set_id=scenario_set.id,
                size=len(scenario_set),
                coverage_estimate=scenario_set.coverage_estimate,
                tail_augmented=scenario_set.tail_augmented,
            )
        ]

        evaluator = PolicyEvaluator(
            objectives=objectives,
            constraints=constraints,
            context=EvaluationContext(baseline_revenue=baseline_revenue, horizon=request.horizon),
            constraint_aliases=aliases,
        )
        result = self.optimizer.run(scenario_set, evaluator, meta=targeting)

        for candidate in result.candidates:
            verdict = self.guardrails.evaluate(candidate)
            if verdict.status == "FAIL":
                events.append(GuardrailViolation(policy_id=candidate.policy_id, reasons=verdict.reasons))

        best = select_best(result.candidates)
        frontier = ParetoFrontierBuilder(objectives).build(result.candidates)
        explanation = self.explainer.build(
            best, scenario_count=len(scenario_set), candidates_evaluated=len(result.candidates)
        )
        events.append(
            PrescriptionCompleted(
                request_id=request.request_id,
                run_id=run_id,
                best_policy_id=best.policy_id if best else None,
                frontier_size=frontier.size,
            )
        )

        duration_ms = (time.perf_counter() - started) * 1000.0
        self.runs += 1
        self.last_run = RunRecord(
            run_id=run_id,
            request_id=request.request_id,
            snapshot_hash=snapshot_hash,
            best=best,
            candidates=result.candidates,
            frontier=frontier,
        )

        if best is None:
            log.warning("prescriptive.no_feasible_policy", candidates=len(result.candidates))
        log.info(
            "prescriptive.run_completed",
            best_policy_id=best.policy_id if best else None,
            frontier_size=frontier.size,
            evaluations=result.evaluations,
            duration_ms=round(duration_ms, 2),
        )

        response = PrescriptiveResponse(
            request_id=request.request_id,
            best_policy=best.to_dict() if best else None,
            pareto_front_meta=ParetoSummary(
                size=frontier.size, hypervolume=frontier.hypervolume, diversity=frontier.diversity
            ),
            explanations=ExplanationPayload(
                rationale=explanation.rationale,
                top_binding_constraints=explanation.top_binding_constraints,
                sensitivity_hotspots=explanation.sensitivity_hotspots,
                risk_profile=explanation.risk_profile,
            ),
            audit_ref=AuditRef(run_id=run_id, snapshot_hash=snapshot_hash),
            events_emitted=list(dict.fromkeys(e.topic for e in events)),
            metrics={
                "scenario_set_id": scenario_set.id,
                "scenario_count": len(scenario_set),
                "scenario_coverage": scenario_set.coverage_estimate,
                "tail_augmented": scenario_set.tail_augmented,
                "strategy": scenario_set.strategy,
                "iterations": result.iterations,
                "candidates_evaluated": len(result.candidates),
                "scenario_evaluations": result.evaluations,
                "feasible_candidates": sum(1 for c in result.candidates if c.feasibility),
                "guardrail_failures": sum(1 for c in result.candidates if c.guardrail_status == "FAIL"),
                "baseline_revenue": baseline_revenue,
                "forecast_id": self.latest_forecast_id,
                "duration_ms": round(duration_ms, 3),
            },
        )
        return response, events

    def get_status(self) -> dict[str, Any]:
        return {
            "engine": "podse",
            "initialized": self.initialized,
            "objectives": [{"id": oid, "weight": w} for oid, w in self.objectives.snapshot_weights()],
            "snapshot_hash": self.objectives.hash_snapshot(),
            "constraints": len(self.constraints),
            "guardrails": self.guardrails.get_status(),
            "forecast_context": sorted(self.forecast_context),
            "runs": self.runs,
            "last_run": self.last_run.summary() if self.last_run else None,
        }


@dataclass
class Engines:
    bus: EventBus
    predictive: PredictiveEngine
    prescriptive: PrescriptiveEngine


def build_engines(settings: Settings | None = None, initialize: bool = True) -> Engines:
    """Construct both orchestrators once, sharing a single bus and security wrapper."""
    settings = settings or get_settings()
    bus = EventBus(history_size=settings.event_history_size)
    predictive = PredictiveEngine(bus=bus, settings=settings)
    prescriptive = PrescriptiveEngine(bus=bus, settings=settings, bridge=predictive.bridge)
    if initialize:
        predictive.initialize()
        prescriptive.initialize()
    return Engines(bus=bus, predictive=predictive, prescriptive=prescriptive)
