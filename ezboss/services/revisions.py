"""
Revision recorder and day-grouped history projection.

Revisions are append-only: a new entry always gets ``current_revision + 1``
and nothing already in ``revisions_history`` is ever edited or reordered.
"""
from collections import OrderedDict
from datetime import date, tzinfo
from typing import Dict, List, Optional, Sequence

import pytz

from ..exceptions import PreconditionError
from ..schemas.auth import Actor
from ..schemas.estimates import (
    Estimate,
    LineItem,
    LineItemWithStatus,
    Revision,
    RevisionChangeType,
    RevisionDay,
    RevisionDetails,
)
from .clock import Clock


class RevisionRecorder:
    def __init__(self, clock: Clock):
        self.clock = clock

    def record(
        self,
        estimate: Estimate,
        change_type: RevisionChangeType,
        changes: str,
        actor: Optional[Actor] = None,
        previous_total: Optional[float] = None,
        details: Optional[RevisionDetails] = None,
    ) -> Revision:
        if estimate.current_revision != len(estimate.revisions_history):
            raise PreconditionError(
                f"Revision log of estimate {estimate.id} is inconsistent: "
                f"current_revision={estimate.current_revision}, entries={len(estimate.revisions_history)}"
            )
        revision = Revision(
            revision_number=estimate.current_revision + 1,
            date=self.clock.now(),
            change_type=change_type,
            changes=changes,
            modified_by=actor.id if actor else None,
            modified_by_name=actor.name if actor else None,
            previous_total=estimate.total if previous_total is None else previous_total,
            new_total=estimate.total,
            details=details or RevisionDetails(),
        )
        estimate.revisions_history.append(revision)
        estimate.current_revision = revision.revision_number
        return revision


def _local_day(revision: Revision, tz: tzinfo) -> date:
    when = revision.date
    if when.tzinfo is None:
        when = pytz.utc.localize(when)
    return when.astimezone(tz).date()


def group_revisions_by_day(revisions: Sequence[Revision], tz: tzinfo = pytz.utc) -> "OrderedDict[date, List[Revision]]":
    """Calendar-day buckets, oldest day first; insertion order kept inside a day."""
    buckets: Dict[date, List[Revision]] = {}
    for revision in revisions:
        buckets.setdefault(_local_day(revision, tz), []).append(revision)
    return OrderedDict(sorted(buckets.items(), key=lambda kv: kv[0]))


def project_line_items(live_items: Sequence[LineItem], day_revisions: Sequence[Revision]) -> List[LineItemWithStatus]:
    """
    Reconstruct the line item view for one day of revisions.

    Items added that day are ``added``; items deleted that day are ``removed``
    and, when already gone from the live list, re-inserted from the snapshot
    stored on the deletion revision.
    """
    added_ids = set()
    removed_ids = set()
    removed_items: List[LineItem] = []
    for revision in day_revisions:
        line_item_id = revision.details.line_item_id
        if revision.change_type == RevisionChangeType.line_item_added and line_item_id:
            added_ids.add(line_item_id)
        elif revision.change_type == RevisionChangeType.line_item_deleted and line_item_id:
            removed_ids.add(line_item_id)
            if revision.details.deleted_item is not None:
                removed_items.append(revision.details.deleted_item)

    items: List[LineItemWithStatus] = []
    for item in live_items:
        status = "normal"
        if item.id in added_ids:
            status = "added"
        elif item.id in removed_ids:
            status = "removed"
        items.append(LineItemWithStatus(**item.model_dump(), status=status))

    live_ids = {i.id for i in items}
    for removed in removed_items:
        if removed.id not in live_ids:
            items.append(LineItemWithStatus(**removed.model_dump(), status="removed"))
            live_ids.add(removed.id)
    return items


def build_revision_history(estimate: Estimate, tz: tzinfo = pytz.utc) -> List[RevisionDay]:
    days = group_revisions_by_day(estimate.revisions_history, tz)
    return [
        RevisionDay(date=day, revisions=revs, line_items=project_line_items(estimate.line_items, revs))
        for day, revs in days.items()
    ]
