"""
Rules engine package.

Defines the condition/action grammar and the engine that runs business
rules against runtime entity data.

Modules of interest:
- models: Enumerations and data classes for rules, sets and results.
- schemas: Pydantic request models for the HTTP surface.
- paths: Dotted field paths and ``{{ path }}`` templates.
- conditions: Safety limits, structural validation and evaluation.
- actions: Per-type action validation and the dispatch registry.
- validation: Whole-payload validation used before rules are stored.
- engine: Discovery, prioritisation and execution.
- execution_log: Bounded in-memory execution history.
"""
