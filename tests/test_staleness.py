from types import SimpleNamespace

from relaybot.health.staleness import StalenessDetector, StoreRecovery


def _msgs(*ids):
    return [SimpleNamespace(id=i) for i in ids]


def test_three_identical_observations_flag_stuck() -> None:
    detector = StalenessDetector()

    results = [detector.observe("c1", _msgs("a", "b")) for _ in range(3)]

    assert results == [False, False, True]
    # stays stuck until the history changes
    assert detector.observe("c1", _msgs("b", "a")) is True


def test_changed_history_resets_the_count() -> None:
    detector = StalenessDetector()

    results = [
        detector.observe("c1", _msgs("a", "b")),
        detector.observe("c1", _msgs("a", "b")),
        detector.observe("c1", _msgs("a", "b", "c")),
    ]

    assert results == [False, False, False]


def test_conversations_are_tracked_independently() -> None:
    detector = StalenessDetector()
    detector.observe("c1", _msgs("a"))
    detector.observe("c1", _msgs("a"))

    assert detector.observe("c2", _msgs("a")) is False
    assert detector.observe("c1", _msgs("a")) is True


def test_empty_histories_count_as_identical() -> None:
    detector = StalenessDetector()

    assert [detector.observe("c1", []) for _ in range(3)] == [False, False, True]


def test_accepts_plain_ids_and_clear() -> None:
    detector = StalenessDetector()
    detector.observe("c1", ["x", "y"])
    detector.observe("c1", ["y", "x"])
    detector.clear("c1")

    assert detector.observe("c1", ["x", "y"]) is False


def test_stats_report_stuck_flag() -> None:
    detector = StalenessDetector()
    for _ in range(3):
        detector.observe("conversation-abcdef-123", _msgs("a"))

    stats = detector.stats()

    assert stats["tracked_conversations"] == 1
    entry = stats["conversations"][0]
    assert entry["id"] == "conversati..."
    assert entry["repeat_count"] == 3
    assert entry["message_count"] == 1
    assert entry["is_stuck"] is True


def test_reset_database_deletes_store_file(tmp_path) -> None:
    db = tmp_path / "dev-abcd.db3"
    db.write_bytes(b"sqlite")
    recovery = StoreRecovery(db)

    assert recovery.reset_database() is True
    assert not db.exists()
    assert recovery.needs_restart is True


def test_reset_database_missing_file(tmp_path) -> None:
    recovery = StoreRecovery(tmp_path / "missing.db3")

    assert recovery.reset_database() is False
    assert recovery.needs_restart is False


def test_recover_requests_restart_even_without_store_file(tmp_path) -> None:
    calls = []
    recovery = StoreRecovery(tmp_path / "missing.db3", on_restart=lambda: calls.append(1))

    assert recovery.recover() is False
    assert calls == [1]
