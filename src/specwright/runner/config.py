"""Runner configuration.

:class:`RunnerConfig` gathers every policy the scheduler and pipeline
consume.  It can be built in code, from ``SPECWRIGHT_*`` environment
variables, or by the CLI; :func:`build_pipeline` turns it into the default
middleware chain (Filter, Retry, Timeout, then any custom middleware at
its requested position).
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field

from specwright.runner.errors import ConfigError
from specwright.runner.filters import SpecPredicate, build_predicate
from specwright.runner.middleware import (
    FilterMiddleware,
    MiddlewarePipeline,
    RetryMiddleware,
    SpecMiddleware,
    TimeoutMiddleware,
)
from specwright.runner.models import RetryPolicy, parse_duration

logger = logging.getLogger(__name__)

ENV_PREFIX = "SPECWRIGHT_"


@dataclass
class MiddlewarePlacement:
    """A custom middleware and where it goes in the chain.

    Attributes:
        middleware: The middleware instance.
        position: Index in the chain (0 is outermost).  ``None`` appends
            it as the innermost middleware, just around the body.
    """

    middleware: SpecMiddleware
    position: int | None = None


@dataclass
class RunnerConfig:
    """Policies applied to a run.

    Attributes:
        parallel: Run the specs of a context concurrently.
        max_parallelism: Upper bound on concurrent specs; ``0`` means the
            number of CPUs.
        bail: Stop starting specs after the first failure.
        retry: Retry policy for failing bodies.
        timeout_seconds: Per-attempt body timeout; ``None`` disables it.
        include_tags: Only run specs carrying one of these tags.
        exclude_tags: Never run specs carrying one of these tags.
        name_pattern: Only run specs whose full description matches.
        exclude_name_pattern: Never run specs whose full description matches.
        predicate: Arbitrary extra selection predicate.
        middleware: Custom middleware to add to the default chain.

    Raises:
        ConfigError: If a numeric setting is out of range.
    """

    parallel: bool = False
    max_parallelism: int = 0
    bail: bool = False
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    timeout_seconds: float | None = None
    include_tags: list[str] = field(default_factory=list)
    exclude_tags: list[str] = field(default_factory=list)
    name_pattern: str | None = None
    exclude_name_pattern: str | None = None
    predicate: SpecPredicate | None = None
    middleware: list[MiddlewarePlacement] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.max_parallelism < 0:
            raise ConfigError(
                f"max_parallelism must be >= 0, got {self.max_parallelism}"
            )
        if self.timeout_seconds is not None and self.timeout_seconds <= 0:
            raise ConfigError(
                f"timeout_seconds must be > 0, got {self.timeout_seconds}"
            )

    @property
    def effective_parallelism(self) -> int:
        """Concurrency bound actually used: 1 unless parallel is on."""
        if not self.parallel:
            return 1
        return self.max_parallelism or os.cpu_count() or 1

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> RunnerConfig:
        """Create a config from ``SPECWRIGHT_*`` environment variables.

        Environment variables:
            SPECWRIGHT_PARALLEL: ``true``/``false``
            SPECWRIGHT_MAX_PARALLELISM: integer
            SPECWRIGHT_BAIL: ``true``/``false``
            SPECWRIGHT_RETRY: number of retries
            SPECWRIGHT_RETRY_DELAY: duration between attempts (``250ms``)
            SPECWRIGHT_TIMEOUT: per-attempt timeout (``2s``)
            SPECWRIGHT_TAGS / SPECWRIGHT_EXCLUDE_TAGS: comma-separated tags
            SPECWRIGHT_FILTER / SPECWRIGHT_EXCLUDE: name regular expressions

        Raises:
            ConfigError: If a variable cannot be parsed.
        """
        env = os.environ if environ is None else environ

        def get(name: str) -> str | None:
            value = env.get(ENV_PREFIX + name)
            return value.strip() if value and value.strip() else None

        try:
            retries = int(get("RETRY") or 0)
            delay = get("RETRY_DELAY")
            timeout = get("TIMEOUT")
            config = cls(
                parallel=_parse_bool(get("PARALLEL")),
                max_parallelism=int(get("MAX_PARALLELISM") or 0),
                bail=_parse_bool(get("BAIL")),
                retry=RetryPolicy(
                    max_retries=retries,
                    base_delay_seconds=parse_duration(delay) if delay else 0.0,
                ),
                timeout_seconds=parse_duration(timeout) if timeout else None,
                include_tags=_parse_list(get("TAGS")),
                exclude_tags=_parse_list(get("EXCLUDE_TAGS")),
                name_pattern=get("FILTER"),
                exclude_name_pattern=get("EXCLUDE"),
            )
        except ValueError as exc:
            raise ConfigError(f"Invalid {ENV_PREFIX}* setting: {exc}") from exc
        logger.debug("Loaded runner config from environment: %s", config)
        return config


def _parse_bool(raw: str | None) -> bool:
    if raw is None:
        return False
    lowered = raw.lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"expected a boolean, got {raw!r}")


def _parse_list(raw: str | None) -> list[str]:
    if raw is None:
        return []
    return [item.strip() for item in raw.split(",") if item.strip()]


def build_pipeline(config: RunnerConfig) -> MiddlewarePipeline:
    """Build the middleware chain described by *config*.

    Default order, outer to inner: Filter, Retry, Timeout.  Each is present
    only when configured, so each retry attempt is individually bounded.
    Custom middleware is then placed at its requested index, in the order
    the placements are listed.
    """
    pipeline = MiddlewarePipeline()
    predicate = build_predicate(
        include_tags=config.include_tags,
        exclude_tags=config.exclude_tags,
        name_pattern=config.name_pattern,
        exclude_name_pattern=config.exclude_name_pattern,
        predicate=config.predicate,
    )
    if predicate is not None:
        pipeline.add(FilterMiddleware(predicate))
    if config.retry.max_retries > 0:
        pipeline.add(RetryMiddleware(config.retry))
    if config.timeout_seconds is not None:
        pipeline.add(TimeoutMiddleware(config.timeout_seconds))
    for placement in config.middleware:
        if placement.position is None:
            pipeline.add(placement.middleware)
        else:
            pipeline.insert(placement.position, placement.middleware)
    return pipeline
