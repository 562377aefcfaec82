from data_sources.error_handling import APIError
from matching.batch import run_sequential


def test_failures_do_not_stop_the_batch():
    waits = []

    def handler(item):
        if item == "boom":
            raise APIError("gateway timeout", "overpass", 504)
        if item == "crash":
            raise KeyError("polygon")
        if item == "skip":
            return None
        return "ok"

    summary = run_sequential(["a", "boom", "skip", "crash", "b"], handler, delay_s=2,
                             label="test", sleep=waits.append)

    assert summary.total == 5
    assert summary.succeeded == 2
    assert summary.failed == 2
    assert summary.skipped == 1
    assert summary.outcomes == {"ok": 2}
    assert [e["error_type"] for e in summary.errors] == ["APIError", "KeyError"]
    assert waits == [2, 2, 2, 2]


def test_no_delay_for_single_item():
    waits = []
    summary = run_sequential(["only"], lambda item: "done", delay_s=5, sleep=waits.append)
    assert waits == []
    assert summary.to_dict()["outcomes"] == {"done": 1}
