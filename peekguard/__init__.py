"""
peekguard: experiment lifecycle and statistical monitoring for A/B/n tests.

An experiment is re-evaluated many times while it runs. Every look at the data
is a chance to be fooled by noise, so the decision of what an experiment may do
next (keep running, warn, stop early, declare a winner) is made by a policy
that guards against peeking rather than by a bare p-value check.

The package is organised in layers:

- `peekguard.core`: typed names, data model, errors, record store and the
  append-only audit ledger.
- `peekguard.stats`: pure statistical machinery (tests, effect sizes, power
  and horizon estimation).
- `peekguard.runtime`: decision policy, the lifecycle state machine and the
  monitoring scheduler.
- `peekguard.backends`, `peekguard.reporting`: aggregate sources and
  tabular views over the ledger.
- `peekguard.api`: a facade wiring everything together.

Example
-------
>>> import peekguard
>>> assert hasattr(peekguard, "core")
>>> assert hasattr(peekguard, "stats")
"""

from peekguard import core, stats  # noqa: F401
from peekguard.__version__ import __version__  # noqa: F401
