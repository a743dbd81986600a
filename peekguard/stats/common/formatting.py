"""
peekguard.stats.common.formatting
=================================

Presentation helpers shared by every caller that renders statistics.

>>> format_p_value(0.0004)
'< 0.001'
>>> format_p_value(0.04567)
'0.046'
>>> significance_band(0.03)
'significant'
>>> format_delta(0.042, as_percentage_points=True)
'+4.2pp'
"""

from __future__ import annotations
import math

OVERWHELMING = "overwhelming"
VERY_STRONG = "very strong"
SIGNIFICANT = "significant"
SUGGESTIVE = "suggestive"
WEAK = "weak"
NO_SIGNAL = "no signal"

_BANDS = (
    (0.001, OVERWHELMING),
    (0.01, VERY_STRONG),
    (0.05, SIGNIFICANT),
    (0.10, SUGGESTIVE),
    (0.20, WEAK),
)


def format_p_value(p_value: float) -> str:
    """Render "< 0.001" for tiny values, otherwise three decimals."""
    if p_value < 0.001:
        return "< 0.001"
    return f"{p_value:.3f}"


def significance_band(p_value: float) -> str:
    """Evidence band for the p-value badge; first matching threshold wins."""
    if math.isnan(p_value):
        return NO_SIGNAL
    for threshold, band in _BANDS:
        if p_value < threshold:
            return band
    return NO_SIGNAL


def format_delta(delta: float, *, as_percentage_points: bool) -> str:
    """Signed delta label: percentage points for rates, plain value otherwise."""
    if math.isinf(delta) or math.isnan(delta):
        return str(delta)
    if as_percentage_points:
        return f"{delta * 100:+.1f}pp"
    return f"{delta:+.3g}"
