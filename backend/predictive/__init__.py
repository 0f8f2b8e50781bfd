"""
Predictive Analytics & Forecasting Engine (PAFE).

Raw KPI observations become governed, cached forecasts:
  ingestion → feature store (lineage + drift) → models hub → governance
  → serving orchestrator (TTL cache, single-flight, stale fallback)
  → insight synthesis (accuracy + decay) / integration bridge (exports)

Usage:
    from predictive.engine import PredictiveEngine

    engine = PredictiveEngine()
    engine.initialize()
    engine.ingest(records)
    forecast = await engine.generate_forecast("P7D", ["revenue"])
"""
