"""Normalize raw provider payloads into canonical metrics records.

All provider-specific vocabulary lives in the ``normalization`` tables of
``sync_config.yaml``; nothing here branches on a provider's field names.

Two payload shapes are understood:

* **Bucketed** (cloud fitness) — one aggregate response per metric stream,
  each holding ``bucket[]`` entries keyed by ``startTimeMillis``.  Buckets
  sharing a start time merge into one record.  Inside a bucket, gauge
  metrics (``reduce: last``) keep the last point, counter metrics
  (``reduce: sum``) add every point.  Buckets with no points are dropped,
  never zero-filled.
* **Flat** (bluetooth, activity service) — one dict of raw key → value,
  producing a single record.

Output is always time-ascending.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any

from athlete_sync.wearables.base import (
    CanonicalMetricsRecord,
    ProviderId,
    RawProviderPayload,
)
from athlete_sync.wearables.config_loader import FieldRule, SyncConfig, get_sync_config
from athlete_sync.wearables.errors import MalformedResponseError

logger = logging.getLogger("athlete_sync.wearables.aggregator")

_COUNT_FIELDS = ("heart_rate", "steps", "calories", "sleep_hours", "hydration_percent", "stress_percent")
_INT_FIELDS = ("heart_rate", "steps")

# Providers whose payloads arrive as server-side buckets.
BUCKETED_PROVIDERS = {ProviderId.CLOUD_FITNESS}


def _point_value(point: Any) -> float | None:
    """First value of a data point (``fpVal`` preferred over ``intVal``)."""
    if not isinstance(point, dict):
        return None
    values = point.get("value") or []
    if not values or not isinstance(values[0], dict):
        return None
    first = values[0]
    for key in ("fpVal", "intVal"):
        if first.get(key) is not None:
            try:
                return float(first[key])
            except (TypeError, ValueError):
                return None
    return None


def _point_time(point: dict) -> int:
    for key in ("endTimeNanos", "startTimeNanos"):
        if point.get(key) is not None:
            try:
                return int(point[key])
            except (TypeError, ValueError):
                pass
    return 0


class MetricsAggregator:
    """Stateless mapper from RawProviderPayload to CanonicalMetricsRecord."""

    def __init__(self, config: SyncConfig | None = None) -> None:
        self._config = config or get_sync_config()

    def normalize(
        self, provider_id: ProviderId, raw: RawProviderPayload | dict
    ) -> list[CanonicalMetricsRecord]:
        """Map a raw payload onto canonical records, time-ascending.

        Args:
            provider_id: Which table to apply.
            raw:         The payload (or its bare dict).

        Returns:
            Zero or more clamped records sorted by timestamp.

        Raises:
            MalformedResponseError: If the payload is not a mapping.
        """
        if isinstance(raw, RawProviderPayload):
            payload, fetched_ms = raw.payload, raw.fetched_at_millis
        else:
            payload, fetched_ms = raw, None
        if not isinstance(payload, dict):
            raise MalformedResponseError(
                f"{provider_id.value} payload must be a mapping", provider=provider_id.value
            )

        table = self._config.normalization_for(provider_id.value)
        if provider_id in BUCKETED_PROVIDERS:
            records = self._normalize_buckets(provider_id, payload, table)
        else:
            records = self._normalize_flat(payload, table, fetched_ms)

        return sorted((r.clamped() for r in records), key=lambda r: r.timestamp)

    # ------------------------------------------------------------------
    # Bucketed payloads
    # ------------------------------------------------------------------

    def _normalize_buckets(
        self, provider_id: ProviderId, payload: dict, table: dict[str, FieldRule]
    ) -> list[CanonicalMetricsRecord]:
        merged: dict[int, dict[str, float]] = {}

        for raw_key, rule in table.items():
            response = payload.get(raw_key)
            if not isinstance(response, dict):
                continue
            for bucket in response.get("bucket") or []:
                start = self._bucket_start(bucket)
                if start is None:
                    continue
                points = [
                    p
                    for dataset in bucket.get("dataset") or []
                    if isinstance(dataset, dict)
                    for p in (dataset.get("point") or [])
                ]
                # Stable sort: equal times keep response order, so the later one wins.
                points.sort(key=_point_time)
                values = [v for v in (_point_value(p) for p in points) if v is not None]
                if not values:
                    continue

                reduced = values[-1] if rule.reduce == "last" else sum(values)
                fields = merged.setdefault(start, {})
                if rule.field in fields and rule.reduce == "sum":
                    fields[rule.field] += reduced
                else:
                    fields[rule.field] = reduced

        rules_by_field = {rule.field: rule for rule in table.values()}
        records = [
            self._build(start, {name: rules_by_field[name].apply(v) for name, v in fields.items()})
            for start, fields in merged.items()
        ]
        records.sort(key=lambda r: r.timestamp)

        activities = self._session_names(payload.get("sessions"))
        if records and activities is not None:
            records[-1] = replace(records[-1], activities=tuple(activities))

        logger.debug("%s: %d bucket records", provider_id.value, len(records))
        return records

    @staticmethod
    def _bucket_start(bucket: Any) -> int | None:
        if not isinstance(bucket, dict):
            return None
        try:
            return int(bucket["startTimeMillis"])
        except (KeyError, TypeError, ValueError):
            return None

    @staticmethod
    def _session_names(sessions: Any) -> list[str] | None:
        if not isinstance(sessions, dict) or "session" not in sessions:
            return None
        return [
            str(s["name"])
            for s in sessions.get("session") or []
            if isinstance(s, dict) and s.get("name")
        ]

    # ------------------------------------------------------------------
    # Flat payloads
    # ------------------------------------------------------------------

    def _normalize_flat(
        self, payload: dict, table: dict[str, FieldRule], fetched_ms: int | None
    ) -> list[CanonicalMetricsRecord]:
        values: dict[str, float] = {}
        for raw_key, rule in table.items():
            raw_value = payload.get(raw_key)
            if raw_value is None:
                continue
            try:
                values[rule.field] = rule.apply(float(raw_value))
            except (TypeError, ValueError):
                logger.debug("Ignoring non-numeric %s=%r", raw_key, raw_value)

        timestamp = payload.get("timestamp", fetched_ms)
        try:
            timestamp = int(timestamp) if timestamp is not None else 0
        except (TypeError, ValueError):
            timestamp = fetched_ms or 0

        record = self._build(timestamp, values)
        activities = payload.get("activities")
        if isinstance(activities, list):
            record = replace(record, activities=tuple(str(a) for a in activities))
        return [record]

    # ------------------------------------------------------------------

    @staticmethod
    def _build(timestamp: int, values: dict[str, float]) -> CanonicalMetricsRecord:
        kwargs: dict[str, Any] = {"timestamp": int(timestamp)}
        for name, value in values.items():
            kwargs[name] = int(round(value)) if name in _INT_FIELDS else value
        for name in _COUNT_FIELDS:
            kwargs.setdefault(name, 0)
        return CanonicalMetricsRecord(**kwargs)
