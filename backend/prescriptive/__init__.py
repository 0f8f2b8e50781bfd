"""
Prescriptive Optimization & Decision Engine (PODSE).

Forecasts plus business objectives become a guardrail-checked, explainable
decision policy:
  objectives/constraints → scenario sandbox → optimization core
  → guardrails → Pareto frontier → explanation

Usage:
    from prescriptive.engine import build_engines

    engines = build_engines()
    response = await engines.prescriptive.prescribe({"horizon": "P30D"})
"""
