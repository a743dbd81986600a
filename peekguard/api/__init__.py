"""
peekguard.api
=============

Facade for callers: `MonitoringService` builds the whole stack from a
`MonitoringConfig` and exposes experiment creation, `apply_action`,
`launch_winner` and the monitoring loop.

Examples
--------
>>> from peekguard.api.service import MonitoringService
>>> from peekguard.backends.polars.provider import PolarsAggregateProvider
>>> service = MonitoringService(PolarsAggregateProvider())
>>> service.list_experiments()
[]
"""
