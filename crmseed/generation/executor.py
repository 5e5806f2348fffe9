from __future__ import annotations

import logging
import random
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

from crmseed.connectors.base import ContentGenerator
from crmseed.core.errors import error_message, is_retryable
from crmseed.datasets.service import DatasetService, DatasetStateError
from crmseed.datasets.types import DatasetConfig, NewRecord
from crmseed.db.models import DatasetStatus
from crmseed.generation.schemas import validate_fields
from crmseed.graph.resolver import INJECTION_ORDER
from crmseed.jobs.service import JobCancelledError
from crmseed.temporal.engine import (
    TemporalConfig,
    TimeWindow,
    activity_slots,
    default_activity_window,
    email_thread_timestamps,
    meeting_slots,
    parse_close_date,
    sales_cycle_window,
)

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, str], None]
CancelCheck = Callable[[], bool]

# Activities link to a contact (WhoId) and an opportunity (WhatId).
_ACTIVITY_TYPES = ("Task", "Event")


@dataclass
class GenerationOutcome:
    dataset_id: str
    records_generated: int
    record_counts: dict[str, int] = field(default_factory=dict)


@dataclass
class _GenerationState:
    local_ids: dict[str, list[str]] = field(default_factory=lambda: defaultdict(list))
    account_of: dict[str, str] = field(default_factory=dict)
    opportunities_by_account: dict[str, list[str]] = field(default_factory=lambda: defaultdict(list))
    opportunity_windows: dict[str, TimeWindow] = field(default_factory=dict)


class GenerationExecutor:
    def __init__(
        self,
        dataset_service: DatasetService,
        generator: ContentGenerator,
        temporal_config: TemporalConfig,
        rng: random.Random,
        *,
        batch_size: int = 25,
        on_progress: ProgressCallback | None = None,
        should_cancel: CancelCheck | None = None,
        now: datetime | None = None,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self._datasets = dataset_service
        self._generator = generator
        self._temporal = temporal_config
        self._rng = rng
        self._batch_size = batch_size
        self._on_progress = on_progress
        self._should_cancel = should_cancel
        self._now = now

    def run(self, dataset_id: str, *, allow_retry: bool = False) -> GenerationOutcome:
        dataset = self._datasets.get_dataset(dataset_id)
        if dataset.status not in {DatasetStatus.PENDING, DatasetStatus.GENERATING}:
            raise DatasetStateError(f"Dataset {dataset_id} cannot be generated from status {dataset.status.value}")

        self._datasets.transition(dataset_id, DatasetStatus.GENERATING)
        try:
            outcome = self._generate(dataset_id, DatasetConfig.model_validate(dataset.config))
        except Exception as exc:
            if allow_retry and is_retryable(exc):
                logger.warning("Generation of dataset %s interrupted, will retry: %s", dataset_id, exc)
            else:
                self._datasets.fail(dataset_id, error_message(exc))
            raise

        self._datasets.refresh_record_counts(dataset_id)
        self._datasets.transition(dataset_id, DatasetStatus.GENERATED)
        self._report(100, "Generation complete")
        logger.info("Generated %s records for dataset %s", outcome.records_generated, dataset_id)
        return outcome

    def _report(self, percent: int, message: str) -> None:
        if self._on_progress is not None:
            self._on_progress(percent, message)

    def _check_cancelled(self) -> None:
        if self._should_cancel is not None and self._should_cancel():
            raise JobCancelledError("Job cancelled")

    def _planned_counts(self, config: DatasetConfig) -> dict[str, int]:
        counts = {object_type: int(config.record_counts.get(object_type, 0)) for object_type in INJECTION_ORDER}
        opportunities = counts["Opportunity"]
        if "Task" not in config.record_counts:
            counts["Task"] = config.activities_per_opportunity * opportunities
        if "EmailMessage" not in config.record_counts:
            counts["EmailMessage"] = config.emails_per_opportunity * opportunities
        return counts

    def _generate(self, dataset_id: str, config: DatasetConfig) -> GenerationOutcome:
        # A retried attempt starts from scratch.
        cleared = self._datasets.clear_records(dataset_id)
        if cleared:
            logger.info("Cleared %s records left by a previous attempt on dataset %s", cleared, dataset_id)

        planned = self._planned_counts(config)
        total = sum(planned.values())
        state = _GenerationState()
        processed = 0

        for object_type in INJECTION_ORDER:
            count = planned[object_type]
            if count == 0:
                continue
            links = self._links_for(object_type, count, state)
            timestamps = self._timestamps_for(object_type, links, state, config)

            for batch_start in range(0, count, self._batch_size):
                self._check_cancelled()
                batch: list[NewRecord] = []
                for index in range(batch_start, min(batch_start + self._batch_size, count)):
                    batch.append(
                        self._build_record(object_type, index, links[index], timestamps.get(index), state, config)
                    )
                self._datasets.add_records(dataset_id, batch)
                processed += len(batch)
                percent = min(99, processed * 100 // total) if total else 99
                self._report(percent, f"Generated {processed}/{total} records")

        return GenerationOutcome(
            dataset_id=dataset_id,
            records_generated=processed,
            record_counts={key: value for key, value in planned.items() if value},
        )

    def _links_for(self, object_type: str, count: int, state: _GenerationState) -> list[dict[str, str]]:
        accounts = state.local_ids["Account"]
        contacts = state.local_ids["Contact"]
        opportunities = state.local_ids["Opportunity"]
        links: list[dict[str, str]] = []
        for index in range(count):
            link: dict[str, str] = {}
            if object_type in {"Contact", "Opportunity"} and accounts:
                link["AccountId_localId"] = accounts[index % len(accounts)]
            elif object_type in _ACTIVITY_TYPES:
                if contacts:
                    link["WhoId_localId"] = contacts[index % len(contacts)]
                account = state.account_of.get(link.get("WhoId_localId", ""))
                pool = state.opportunities_by_account.get(account, []) if account else []
                pool = pool or opportunities
                if pool:
                    link["WhatId_localId"] = pool[index % len(pool)]
            elif object_type == "EmailMessage" and opportunities:
                link["RelatedToId_localId"] = opportunities[index % len(opportunities)]
            links.append(link)
        return links

    def _window_for(self, opportunity_id: str | None, state: _GenerationState) -> TimeWindow:
        if opportunity_id is not None and opportunity_id in state.opportunity_windows:
            return state.opportunity_windows[opportunity_id]
        return default_activity_window(self._now or datetime.now(tz=timezone.utc))

    def _timestamps_for(
        self,
        object_type: str,
        links: list[dict[str, str]],
        state: _GenerationState,
        config: DatasetConfig,
    ) -> dict[int, Any]:
        if object_type not in {*_ACTIVITY_TYPES, "EmailMessage"}:
            return {}

        link_field = "RelatedToId_localId" if object_type == "EmailMessage" else "WhatId_localId"
        groups: dict[str | None, list[int]] = defaultdict(list)
        for index, link in enumerate(links):
            groups[link.get(link_field)].append(index)

        timestamps: dict[int, Any] = {}
        for opportunity_id, indices in groups.items():
            window = self._window_for(opportunity_id, state)
            if object_type == "Task":
                slots: list[Any] = activity_slots(len(indices), window, self._temporal, self._rng, config.density_shape)
            elif object_type == "Event":
                slots = meeting_slots(len(indices), window, self._temporal, self._rng, density=config.density_shape)
            else:
                first = activity_slots(1, window, self._temporal, self._rng, config.density_shape)[0]
                slots = email_thread_timestamps(len(indices), first, self._temporal, self._rng)
            for index, slot in zip(indices, slots):
                timestamps[index] = slot
        return timestamps

    def _build_record(
        self,
        object_type: str,
        index: int,
        link: dict[str, str],
        timestamp: Any,
        state: _GenerationState,
        config: DatasetConfig,
    ) -> NewRecord:
        local_id = f"{object_type}_{index + 1}"
        context = {
            "scenario": config.scenario,
            "industry": config.industry,
            "index": index,
            "links": dict(link),
        }
        fields = dict(self._generator.generate(object_type, context))
        fields.update(link)

        if object_type == "Task" and timestamp is not None:
            fields["ActivityDate"] = timestamp.date().isoformat()
        elif object_type == "Event" and timestamp is not None:
            start, end = timestamp
            fields["StartDateTime"] = start.isoformat()
            fields["EndDateTime"] = end.isoformat()
        elif object_type == "EmailMessage" and timestamp is not None:
            fields["MessageDate"] = timestamp.isoformat()

        data = validate_fields(object_type, fields)
        parent = (
            link.get("AccountId_localId")
            or link.get("WhoId_localId")
            or link.get("WhatId_localId")
            or link.get("RelatedToId_localId")
        )

        state.local_ids[object_type].append(local_id)
        if object_type == "Contact" and parent:
            state.account_of[local_id] = parent
        elif object_type == "Opportunity":
            if parent:
                state.opportunities_by_account[parent].append(local_id)
            state.opportunity_windows[local_id] = sales_cycle_window(
                parse_close_date(data["CloseDate"]),
                data.get("StageName"),
                self._temporal,
            )
        return NewRecord(object_type=object_type, local_id=local_id, data=data, parent_local_id=parent)


