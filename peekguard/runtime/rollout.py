"""
peekguard.runtime.rollout
=========================

Remote-config rollout boundary.

After completion the winning variant can be pushed to a feature-flag
provider; deleting an experiment that holds a rollout first pushes the
control value back. The provider itself is external: anything with an async
`push_flag_value(key, value, provider) -> bool` will do.
"""

from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass, field
from typing import List, Protocol, Tuple, runtime_checkable

from peekguard.core.errors import ExternalRolloutFailure

logger = logging.getLogger(__name__)


@runtime_checkable
class RolloutClient(Protocol):
    async def push_flag_value(self, key: str, value: str, provider: str) -> bool:
        ...


@dataclass(frozen=True)
class RolloutConfig:
    """Where the winning variant is pushed (e.g. provider "launchdarkly")."""

    provider: str
    flag_key: str


async def push_or_raise(
    client: RolloutClient,
    config: RolloutConfig,
    value: str,
    timeout: float,
) -> None:
    """Push `value`; a False answer, an error or a timeout raise ExternalRolloutFailure."""
    try:
        ok = await asyncio.wait_for(
            client.push_flag_value(config.flag_key, value, config.provider), timeout
        )
    except asyncio.TimeoutError as e:
        raise ExternalRolloutFailure(
            f"Timed out pushing {config.flag_key}={value} to {config.provider}"
        ) from e
    except ExternalRolloutFailure:
        raise
    except Exception as e:
        raise ExternalRolloutFailure(
            f"Pushing {config.flag_key}={value} to {config.provider} failed: {e}"
        ) from e
    if not ok:
        raise ExternalRolloutFailure(
            f"{config.provider} rejected {config.flag_key}={value}"
        )
    logger.info("Pushed %s=%s to %s", config.flag_key, value, config.provider)


@dataclass
class RecordingRolloutClient:
    """Rollout client that records calls and answers with `succeed`."""

    succeed: bool = True
    calls: List[Tuple[str, str, str]] = field(default_factory=list)

    async def push_flag_value(self, key: str, value: str, provider: str) -> bool:
        self.calls.append((key, value, provider))
        return self.succeed
