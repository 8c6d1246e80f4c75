from tradetracker.models import FetchProgressEvent, TimeRange
from tradetracker.progress import ProgressReporter


def _event(account_id="acc-1", idx=1, total=4, records=0):
    return FetchProgressEvent(
        account_id=account_id,
        chunk_index=idx,
        total_chunks=total,
        records_retrieved=records,
        current_range=TimeRange(0, 10),
    )


def test_events_reach_only_matching_account_subscribers():
    reporter = ProgressReporter()
    seen_a, seen_b, seen_all = [], [], []
    reporter.subscribe("a", seen_a.append)
    reporter.subscribe("b", seen_b.append)
    reporter.subscribe_all(seen_all.append)

    reporter.publish(_event("a"))

    assert len(seen_a) == 1
    assert seen_b == []
    assert len(seen_all) == 1


def test_last_unsubscribe_drops_account_entry():
    reporter = ProgressReporter()
    first = reporter.subscribe("a", lambda event: None)
    second = reporter.subscribe("a", lambda event: None)
    assert reporter.subscriber_count("a") == 2

    first()
    assert reporter.has_subscribers("a")
    second()
    assert not reporter.has_subscribers("a")
    # unsubscribing twice is harmless
    second()
    assert reporter.subscriber_count("a") == 0


def test_failing_subscriber_does_not_block_others():
    reporter = ProgressReporter()
    seen = []

    def broken(event):
        raise RuntimeError("nope")

    reporter.subscribe("a", broken)
    reporter.subscribe("a", seen.append)
    reporter.publish(_event("a"))

    assert len(seen) == 1


def test_subscriber_may_unsubscribe_while_notified():
    reporter = ProgressReporter()
    seen = []
    unsubscribe = None

    def once(event):
        seen.append(event)
        unsubscribe()

    unsubscribe = reporter.subscribe("a", once)
    reporter.publish(_event("a", idx=1))
    reporter.publish(_event("a", idx=2))

    assert [event.chunk_index for event in seen] == [1]


def test_percentage():
    assert _event(idx=1, total=4).percentage == 25
    assert _event(idx=4, total=4).percentage == 100
    assert _event(idx=0, total=0).percentage == 100
