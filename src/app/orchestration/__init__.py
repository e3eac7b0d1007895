"""Adaptive orchestration engine.

Learns from every multi-agent execution to pick, order and score agents for
new objectives, and repairs plans at runtime when an agent fails.

Components:
- features / kdtree: objective classification, feature vectors, k-NN index
- pattern_store: execution history with rolling aggregates
- scorer: per-agent predicted success for an objective
- failures: error taxonomy, failure analysis and failure chains
- refiner: confidence-tiered plan repair after a failure
- confidence / calibration: Bayesian evidence pooling and calibration curve
- conflicts: tool and learned pair conflicts with temporal decay
- executor: per-execution adaptive state machine
- retry / sync: sequential agent fallback and hybrid persistence
- feedback: folds finished executions back into every learner
- engine: OrchestrationEngine and build_engine()
- scheduler: background flush and prune tasks
"""
