"""
Processor Registry
==================

Process-local table of known payment processors and the selection policy
that picks one at runtime:

    priority -> configuration validity -> live health -> fallback

Enabled flags and priorities can be changed by an operator while the process
runs; changes are not persisted and apply to the next selection.
"""

import logging
import os
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import asdict, dataclass, field, replace
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from .config import Settings
from .errors import NoProcessorAvailable, UnknownProcessor
from .logging import log_action
from .processors import PaynetworxProcessor, ProcessorAdapter, PyreProcessor, StripeProcessor

logger = logging.getLogger(__name__)

ProcessorFactory = Callable[[Mapping[str, str]], ProcessorAdapter]

DEFAULT_PROBE_TIMEOUT_SECONDS = 5.0


@dataclass
class ProcessorConfig:
    name: str
    factory: ProcessorFactory
    priority: int
    enabled: bool = True
    required_config_keys: Tuple[str, ...] = ()
    aliases: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Selection:
    processor: ProcessorAdapter
    processor_name: str
    reason: str
    skipped: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ProcessorAvailability:
    name: str
    priority: int
    enabled: bool
    available: bool
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class SelectionOptions:
    """Arguments for ``ProcessorRegistry.smart_choose``."""

    preferred_order: Optional[List[str]] = None
    test_connections: bool = False
    fallback: Optional[str] = None

    @classmethod
    def for_environment(cls, settings: Settings) -> "SelectionOptions":
        """
        Environment defaults.

        development/test: stripe only, no live probes.
        production: pyre then stripe, with connection tests.
        Explicit settings override either default.
        """
        if settings.preferred_processors:
            preferred = settings.preferred_processors
        elif settings.is_production:
            preferred = ["pyre", "stripe"]
        else:
            preferred = ["stripe"]

        test_connections = settings.PAYMENT_TEST_CONNECTIONS
        if test_connections is None:
            test_connections = settings.is_production

        return cls(
            preferred_order=preferred,
            test_connections=test_connections,
            fallback=settings.PAYMENT_FALLBACK_PROCESSOR or None,
        )

    @classmethod
    def for_billing_run(cls, settings: Settings) -> "SelectionOptions":
        """
        Defaults for the recurring billing run.

        Candidates follow registry priority, so operator reprioritization
        applies to the next run, unless preferences are set explicitly.
        """
        options = cls.for_environment(settings)
        return replace(options, preferred_order=settings.preferred_processors or None)


class ProcessorRegistry:
    """Known processors, their runtime flags, and the selection policy."""

    def __init__(
        self,
        configs: Sequence[ProcessorConfig],
        env: Optional[Mapping[str, str]] = None,
        probe_timeout: float = DEFAULT_PROBE_TIMEOUT_SECONDS,
    ) -> None:
        self._configs: Dict[str, ProcessorConfig] = {}
        self._aliases: Dict[str, str] = {}
        self._env = env if env is not None else os.environ
        self.probe_timeout = probe_timeout
        for config in configs:
            self.register(config)

    def register(self, config: ProcessorConfig) -> None:
        self._configs[config.name] = config
        for alias in config.aliases:
            self._aliases[alias] = config.name

    def _lookup(self, name: str) -> ProcessorConfig:
        key = self._aliases.get(name, name)
        config = self._configs.get(key)
        if config is None:
            raise UnknownProcessor(name)
        return config

    def _sorted_configs(self) -> List[ProcessorConfig]:
        return sorted(self._configs.values(), key=lambda config: config.priority)

    def _missing_keys(self, config: ProcessorConfig) -> List[str]:
        return [key for key in config.required_config_keys if not self._env.get(key)]

    def _build(self, config: ProcessorConfig) -> ProcessorAdapter:
        return config.factory(self._env)

    def _probe(self, adapter: ProcessorAdapter) -> bool:
        """Run the adapter's connection test, bounded by ``probe_timeout``."""
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="processor-probe")
        try:
            future = executor.submit(adapter.test_connection, self.probe_timeout)
            return bool(future.result(timeout=self.probe_timeout))
        except FutureTimeout:
            logger.warning("Connection test for %s timed out after %.1fs",
                           adapter.get_processor_name(), self.probe_timeout)
            return False
        except Exception as exc:
            logger.warning("Connection test for %s failed: %s", adapter.get_processor_name(), exc)
            return False
        finally:
            executor.shutdown(wait=False)

    # -------------------------------------------------------------------------
    # selection
    # -------------------------------------------------------------------------

    def choose(self, name: str) -> ProcessorAdapter:
        """Explicitly build the named processor (aliases accepted)."""
        return self._build(self._lookup(name))

    def _candidates(self, preferred_order: Optional[Sequence[str]]) -> List[ProcessorConfig]:
        if not preferred_order:
            return self._sorted_configs()
        candidates: List[ProcessorConfig] = []
        for name in preferred_order:
            try:
                config = self._lookup(name)
            except UnknownProcessor:
                logger.warning("Ignoring unknown preferred processor %r", name)
                continue
            if config not in candidates:
                candidates.append(config)
        return candidates

    def smart_choose(
        self,
        preferred_order: Optional[Sequence[str]] = None,
        test_connections: bool = False,
        fallback: Optional[str] = None,
    ) -> Selection:
        """
        Pick the first usable processor.

        Candidates are tried in ``preferred_order`` (unknown names dropped) or
        by ascending priority. A candidate is skipped when disabled, when any
        required configuration key is missing, or (only when
        ``test_connections`` is set and the adapter has a probe) when its
        connection test fails. If nothing qualifies, ``fallback`` is checked
        for configuration only.

        Raises:
            NoProcessorAvailable: no candidate and no valid fallback
        """
        skipped: Dict[str, str] = {}

        for config in self._candidates(preferred_order):
            if not config.enabled:
                skipped[config.name] = "disabled"
                continue

            missing = self._missing_keys(config)
            if missing:
                skipped[config.name] = f"missing configuration: {', '.join(missing)}"
                continue

            try:
                adapter = self._build(config)
            except Exception as exc:
                logger.error("Could not initialize processor %s: %s", config.name, exc)
                skipped[config.name] = f"initialization failed: {exc}"
                continue

            if test_connections and adapter.supports_probe:
                if not self._probe(adapter):
                    skipped[config.name] = "connection test failed"
                    continue
                reason = "connection test passed"
            elif test_connections:
                reason = "configuration valid (no connection test available)"
            else:
                reason = "configuration valid"

            return self._selected(adapter, config.name, reason, skipped)

        if fallback:
            try:
                config = self._lookup(fallback)
            except UnknownProcessor:
                skipped[fallback] = "unknown fallback processor"
            else:
                missing = self._missing_keys(config)
                if not missing:
                    return self._selected(self._build(config), config.name, "fallback", skipped)
                skipped.setdefault(config.name, f"missing configuration: {', '.join(missing)}")

        log_action("processor.unavailable", "No payment processor available",
                   level="error", skipped=skipped)
        raise NoProcessorAvailable("No payment processor available", skipped=skipped)

    def _selected(self, adapter: ProcessorAdapter, name: str, reason: str,
                  skipped: Dict[str, str]) -> Selection:
        log_action("processor.selected", f"Selected payment processor {name}",
                   processor=name, reason=reason, skipped=skipped)
        return Selection(processor=adapter, processor_name=name, reason=reason, skipped=dict(skipped))

    def select(self, options: SelectionOptions) -> Selection:
        return self.smart_choose(
            preferred_order=options.preferred_order,
            test_connections=options.test_connections,
            fallback=options.fallback,
        )

    # -------------------------------------------------------------------------
    # diagnostics and runtime mutation
    # -------------------------------------------------------------------------

    def get_available_processors(self, test_connections: bool = False) -> List[ProcessorAvailability]:
        report: List[ProcessorAvailability] = []
        for config in self._sorted_configs():
            available, reason = False, "available"
            missing = self._missing_keys(config)
            if not config.enabled:
                reason = "disabled"
            elif missing:
                reason = f"missing configuration: {', '.join(missing)}"
            else:
                try:
                    adapter = self._build(config)
                except Exception as exc:
                    reason = f"initialization failed: {exc}"
                else:
                    if test_connections and adapter.supports_probe and not self._probe(adapter):
                        reason = "connection test failed"
                    else:
                        available = True
            report.append(ProcessorAvailability(
                name=config.name,
                priority=config.priority,
                enabled=config.enabled,
                available=available,
                reason=reason,
            ))
        return report

    def set_processor_enabled(self, name: str, enabled: bool) -> ProcessorConfig:
        config = self._lookup(name)
        config.enabled = enabled
        logger.info("Processor %s %s", config.name, "enabled" if enabled else "disabled")
        return config

    def set_processor_priority(self, name: str, priority: int) -> ProcessorConfig:
        config = self._lookup(name)
        config.priority = priority
        logger.info("Processor %s priority set to %d", config.name, priority)
        return config

    def describe(self, name: str) -> ProcessorAvailability:
        config = self._lookup(name)
        return next(entry for entry in self.get_available_processors() if entry.name == config.name)

    def is_payment_system_healthy(self, options: Optional[SelectionOptions] = None) -> bool:
        try:
            self.select(options or SelectionOptions())
        except NoProcessorAvailable:
            return False
        return True

    def payment_system_status(self, options: Optional[SelectionOptions] = None) -> Dict[str, Any]:
        options = options or SelectionOptions()
        status: Dict[str, Any] = {
            "healthy": False,
            "selected": None,
            "reason": None,
            "processors": [
                entry.to_dict()
                for entry in self.get_available_processors(options.test_connections)
            ],
        }
        try:
            selection = self.select(options)
        except NoProcessorAvailable as exc:
            status["reason"] = str(exc)
            status["skipped"] = exc.skipped
        else:
            status.update(
                healthy=True,
                selected=selection.processor_name,
                reason=selection.reason,
                skipped=selection.skipped,
            )
        return status


# =============================================================================
# DEFAULT TABLE
# =============================================================================

def build_default_registry(settings: Settings, env: Optional[Mapping[str, str]] = None) -> ProcessorRegistry:
    """Registry with the three supported providers: pyre=1, stripe=2, paynetworx=3."""
    timeout = settings.PROCESSOR_TIMEOUT_SECONDS

    configs = [
        ProcessorConfig(
            name=PyreProcessor.name,
            factory=lambda env: PyreProcessor(env["PYRE_API_URL"], env["PYRE_API_KEY"], timeout=timeout),
            priority=1,
            required_config_keys=("PYRE_API_URL", "PYRE_API_KEY"),
            aliases=("pyre",),
        ),
        ProcessorConfig(
            name=StripeProcessor.name,
            factory=lambda env: StripeProcessor(env["STRIPE_SECRET_KEY"], timeout=timeout),
            priority=2,
            required_config_keys=("STRIPE_SECRET_KEY",),
        ),
        ProcessorConfig(
            name=PaynetworxProcessor.name,
            factory=lambda env: PaynetworxProcessor(
                env["PAYNETWORX_BASE_URL"],
                env["PAYNETWORX_MERCHANT_USER"],
                env["PAYNETWORX_MERCHANT_PASS"],
                timeout=timeout,
            ),
            priority=3,
            required_config_keys=(
                "PAYNETWORX_BASE_URL",
                "PAYNETWORX_MERCHANT_USER",
                "PAYNETWORX_MERCHANT_PASS",
            ),
        ),
    ]
    return ProcessorRegistry(configs, env=env, probe_timeout=settings.PROCESSOR_PROBE_TIMEOUT_SECONDS)
