from datetime import date, datetime, timezone

import pytest
import pytz

from ezboss.exceptions import PreconditionError
from ezboss.schemas.estimates import Estimate, LineItem, Revision, RevisionChangeType, RevisionDetails
from ezboss.schemas.updates import AddLineItem, UpdateLineItem
from ezboss.services.revisions import RevisionRecorder, group_revisions_by_day, project_line_items


DAY = 24 * 60 * 60


def _revision(number, when, change_type=RevisionChangeType.line_item_added, **details):
    return Revision(revision_number=number, date=when, change_type=change_type, changes="", details=RevisionDetails(**details))


class TestRevisionRecorder:
    def test_numbers_follow_current_revision(self, clock):
        recorder = RevisionRecorder(clock)
        estimate = Estimate(id="est_x", estimate_number="EST-2025-001", customer_name="A")

        first = recorder.record(estimate, RevisionChangeType.created, "created")
        second = recorder.record(estimate, RevisionChangeType.details_changed, "details")

        assert (first.revision_number, second.revision_number) == (1, 2)
        assert estimate.current_revision == 2
        assert first.date == clock.now()

    def test_inconsistent_log_refuses_to_append(self, clock):
        recorder = RevisionRecorder(clock)
        estimate = Estimate(id="est_x", estimate_number="EST-2025-001", customer_name="A", current_revision=3)

        with pytest.raises(PreconditionError):
            recorder.record(estimate, RevisionChangeType.created, "created")
        assert estimate.revisions_history == []


class TestDayGrouping:
    def test_oldest_day_first_and_insertion_order_within_day(self):
        revisions = [
            _revision(1, datetime(2025, 1, 16, 9, tzinfo=timezone.utc)),
            _revision(2, datetime(2025, 1, 15, 23, tzinfo=timezone.utc)),
            _revision(3, datetime(2025, 1, 16, 8, tzinfo=timezone.utc)),
        ]

        days = group_revisions_by_day(revisions)

        assert list(days) == [date(2025, 1, 15), date(2025, 1, 16)]
        assert [r.revision_number for r in days[date(2025, 1, 16)]] == [1, 3]

    def test_grouping_uses_business_timezone(self):
        # 02:00 UTC is still the previous evening in Vancouver
        revisions = [_revision(1, datetime(2025, 1, 16, 2, tzinfo=timezone.utc))]

        days = group_revisions_by_day(revisions, pytz.timezone("America/Vancouver"))

        assert list(days) == [date(2025, 1, 15)]


class TestProjection:
    def test_added_and_removed_statuses(self):
        kept = LineItem(id="li_1", description="Kept", quantity=1, unit_price=10, total=10)
        new = LineItem(id="li_2", description="New", quantity=1, unit_price=20, total=20)
        gone = LineItem(id="li_3", description="Gone", quantity=2, unit_price=5, total=10)
        when = datetime(2025, 1, 15, 12, tzinfo=timezone.utc)
        day = [
            _revision(2, when, line_item_id="li_2"),
            _revision(3, when, RevisionChangeType.line_item_deleted, line_item_id="li_3", deleted_item=gone),
        ]

        items = project_line_items([kept, new], day)

        assert [(i.id, i.status) for i in items] == [("li_1", "normal"), ("li_2", "added"), ("li_3", "removed")]
        assert items[2].description == "Gone"

    def test_added_wins_when_an_item_was_added_and_deleted_later(self):
        item = LineItem(id="li_2", description="Flip", quantity=1, unit_price=1, total=1)
        when = datetime(2025, 1, 15, 12, tzinfo=timezone.utc)
        day = [
            _revision(2, when, line_item_id="li_2"),
            _revision(3, when, RevisionChangeType.line_item_deleted, line_item_id="li_2", deleted_item=item),
        ]

        items = project_line_items([item], day)

        assert [(i.id, i.status) for i in items] == [("li_2", "added")]


class TestRevisionHistory:
    def test_deleted_item_shows_as_removed_on_its_day(self, service, scenario_a, clock):
        clock.advance(DAY)
        doomed = scenario_a.line_items[1]
        service.delete_line_item(scenario_a.id, doomed.id)

        history = service.revision_history(scenario_a.id)

        assert [d.date for d in history] == [date(2025, 1, 15), date(2025, 1, 16)]
        deletion_day = history[1]
        assert doomed.id not in [li.id for li in service.get_estimate(scenario_a.id).line_items]
        removed = [li for li in deletion_day.line_items if li.status == "removed"]
        assert [li.id for li in removed] == [doomed.id]
        assert removed[0].total == doomed.total

    def test_each_day_marks_its_own_additions(self, service, scenario_a, clock):
        clock.advance(DAY)
        monday = service.add_line_item(scenario_a.id, AddLineItem(description="Railing", quantity=1, unit_price=400))
        clock.advance(DAY)
        service.update_line_item(scenario_a.id, monday.id, UpdateLineItem(quantity=2))

        history = service.revision_history(scenario_a.id)

        statuses = [{li.id: li.status for li in day.line_items}[monday.id] for day in history]
        assert statuses == ["normal", "added", "normal"]
        assert [len(d.revisions) for d in history] == [1, 1, 1]
