"""Load and validate the bundled metric catalog.

The catalog lives in ``metrics.yaml`` alongside this module.  It is loaded
once and cached; ``reload_metric_catalog()`` re-reads it from disk.

Usage::

    from neurostream.catalog import get_metric_catalog

    catalog = get_metric_catalog()
    catalog.is_local("brainwaves")          # True
    catalog.labels("awareness")             # ("calm", "focus")
    catalog.supports("accelerometer", "1")  # False
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from pathlib import Path

import yaml

logger = logging.getLogger("neurostream.catalog")

_CATALOG_PATH = Path(__file__).parent / "metrics.yaml"


# ---------------------------------------------------------------------------
# Typed catalog sections
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MetricSpec:
    """Static facts about one metric."""

    name: str
    labels: tuple[str, ...]
    atomic: bool
    local: bool
    namespace: bool = False
    min_model_version: int | None = None


@dataclass(frozen=True)
class PlatformSpec:
    """Optional hardware carried by one device model."""

    model_version: str
    name: str
    haptic_motors: tuple[str, ...]

    @property
    def supports_haptics(self) -> bool:
        return bool(self.haptic_motors)


@dataclass(frozen=True)
class HapticsSpec:
    max_effects_per_motor: int
    response_timeout_ms: int


@dataclass
class MetricCatalog:
    """Validated in-memory form of metrics.yaml.

    Attributes:
        version:   Catalog schema version string.
        metrics:   Metric name → MetricSpec.
        platforms: Model version → PlatformSpec.
        haptics:   Haptic command limits.
    """

    version: str
    metrics: dict[str, MetricSpec]
    platforms: dict[str, PlatformSpec]
    haptics: HapticsSpec

    @property
    def local_metrics(self) -> frozenset[str]:
        """The closed set of metrics the device socket can serve."""
        return frozenset(name for name, spec in self.metrics.items() if spec.local)

    def is_local(self, metric: str) -> bool:
        return metric in self.local_metrics

    def is_namespace(self, metric: str) -> bool:
        spec = self.metrics.get(metric)
        return bool(spec and spec.namespace)

    def labels(self, metric: str) -> tuple[str, ...]:
        spec = self.metrics.get(metric)
        return spec.labels if spec else ()

    def platform(self, model_version: str | None) -> PlatformSpec | None:
        if model_version is None:
            return None
        return self.platforms.get(str(model_version))

    def supports(self, metric: str, model_version: str | None) -> bool:
        """Return True if the given hardware model can produce ``metric``.

        Unknown metrics and unknown models are assumed supported; the backend
        has the final word on those.
        """
        spec = self.metrics.get(metric)
        if spec is None or spec.min_model_version is None or model_version is None:
            return True
        try:
            return int(model_version) >= spec.min_model_version
        except (TypeError, ValueError):
            logger.warning("Unparseable model version %r for %s", model_version, metric)
            return True


# ---------------------------------------------------------------------------
# Loader / validation
# ---------------------------------------------------------------------------


class CatalogValidationError(ValueError):
    """Raised when metrics.yaml fails validation."""


def _load_yaml(path: Path) -> dict:
    if not path.exists():
        raise FileNotFoundError(f"Metric catalog not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        try:
            return yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise CatalogValidationError(f"YAML parse error in {path}: {exc}") from exc


def _validate_and_build(raw: dict) -> MetricCatalog:
    """Validate the raw YAML dict and construct a MetricCatalog.

    Raises:
        CatalogValidationError: Listing every problem found.
    """
    errors: list[str] = []

    version = str(raw.get("version", "1.0"))

    # ── Metrics ──
    metrics_raw = raw.get("metrics") or {}
    if not metrics_raw:
        errors.append("'metrics' section is missing or empty")

    metrics: dict[str, MetricSpec] = {}
    for name, cfg in metrics_raw.items():
        if not isinstance(cfg, dict):
            errors.append(f"metrics.{name} must be a mapping")
            continue
        labels = cfg.get("labels") or []
        if not isinstance(labels, list) or not all(isinstance(label, str) for label in labels):
            errors.append(f"metrics.{name}.labels must be a list of strings")
            continue
        min_model = cfg.get("min_model_version")
        if min_model is not None:
            try:
                min_model = int(min_model)
            except (TypeError, ValueError):
                errors.append(
                    f"metrics.{name}.min_model_version must be an integer, got {min_model!r}"
                )
                continue
        namespace = bool(cfg.get("namespace", False))
        local = bool(cfg.get("local", False))
        if namespace and local:
            errors.append(f"metrics.{name} cannot be both a namespace and local")
        metrics[name] = MetricSpec(
            name=name,
            labels=tuple(labels),
            atomic=bool(cfg.get("atomic", False)),
            local=local,
            namespace=namespace,
            min_model_version=min_model,
        )

    # ── Platforms ──
    platforms: dict[str, PlatformSpec] = {}
    for model, cfg in (raw.get("platforms") or {}).items():
        if not isinstance(cfg, dict):
            errors.append(f"platforms.{model} must be a mapping")
            continue
        platforms[str(model)] = PlatformSpec(
            model_version=str(model),
            name=cfg.get("name", f"Model {model}"),
            haptic_motors=tuple(cfg.get("haptic_motors") or ()),
        )

    # ── Haptics ──
    hp_raw = raw.get("haptics") or {}
    haptics = HapticsSpec(
        max_effects_per_motor=int(hp_raw.get("max_effects_per_motor", 7)),
        response_timeout_ms=int(hp_raw.get("response_timeout_ms", 1000)),
    )
    if haptics.max_effects_per_motor < 1:
        errors.append("haptics.max_effects_per_motor must be at least 1")

    if errors:
        raise CatalogValidationError(
            f"metrics.yaml has {len(errors)} validation error(s):\n"
            + "\n".join(f"  • {e}" for e in errors)
        )

    return MetricCatalog(
        version=version,
        metrics=metrics,
        platforms=platforms,
        haptics=haptics,
    )


def load_metric_catalog(path: Path | None = None) -> MetricCatalog:
    """Load and validate the catalog from disk.

    Args:
        path: Override path to YAML. Uses the bundled metrics.yaml by default.
    """
    target = path or _CATALOG_PATH
    catalog = _validate_and_build(_load_yaml(target))
    logger.info(
        "Loaded metric catalog v%s (%d metrics, %d local)",
        catalog.version,
        len(catalog.metrics),
        len(catalog.local_metrics),
    )
    return catalog


# ---------------------------------------------------------------------------
# Global singleton
# ---------------------------------------------------------------------------

_catalog: MetricCatalog | None = None
_catalog_lock = threading.Lock()


def get_metric_catalog() -> MetricCatalog:
    """Return the global MetricCatalog, loading it on first call."""
    global _catalog
    if _catalog is None:
        with _catalog_lock:
            if _catalog is None:
                _catalog = load_metric_catalog()
    return _catalog


def reload_metric_catalog(path: Path | None = None) -> MetricCatalog:
    """Re-read the catalog and replace the singleton.

    The old catalog is kept if validation fails.
    """
    global _catalog
    new_catalog = load_metric_catalog(path)
    with _catalog_lock:
        _catalog = new_catalog
    return new_catalog
