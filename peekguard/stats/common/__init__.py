"""
peekguard.stats.common
======================

Generic, test-agnostic statistical building blocks: standard errors and
critical values, effect sizes and their labels, power formulas and the shared
presentation policy for p-values and deltas.
"""
