"""
peekguard.runtime
=================

Runtime that moves experiments through their lifecycle.

Key Components
--------------
- `PolicyEvaluator`: decision rules producing `ExperimentSummary` and `Results`
- `ExperimentLifecycle`: the state machine with compare-and-set writes
- `MonitoringScheduler`: periodic evaluation of running experiments
- `NotificationChannel`, `RolloutClient`: boundaries to external systems

Examples
--------
>>> from peekguard.runtime.policy import PolicyEvaluator
>>> from peekguard.core.names import ExperimentStatus
>>> PolicyEvaluator().allowed_actions(ExperimentStatus.DRAFT)
('duplicate', 'delete')
"""
