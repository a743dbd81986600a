"""
Statistical machinery for experiment monitoring.

1. **Common** (peekguard.stats.common):
   Generic methods independent of any test family: standard errors,
   effect sizes, power formulas, formatting.

2. **Engine** (peekguard.stats.engine):
   The test-type-polymorphic `StatisticalTestEngine`.

3. **Horizon** (peekguard.stats.horizon):
   `PowerAndHorizonEstimator`, which projects how long an experiment still
   needs to reach its power target.

Everything here is pure: identical aggregates give identical results.

Example:
--------
>>> from peekguard.stats.common.formatting import format_p_value
>>> format_p_value(0.2)
'0.200'
"""
