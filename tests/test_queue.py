"""
Tests for the outbound mutation queue.
"""
import threading
import time

import pytest

from app.cache import FetchRequest
from app.db import create_session_factory
from app.sync import MutationQueue, SingleFlight, item_id_from_tag

from conftest import url


def _post(path, body=b'{"reps": 10}'):
    return FetchRequest(
        url=url(path), method="POST", headers={"Content-Type": "application/json"}, body=body
    )


# =============================================================================
# Enqueue & durability
# =============================================================================

def test_enqueue_assigns_increasing_ids(queue):
    first = queue.enqueue(_post("/api/workouts"))
    second = queue.enqueue(_post("/api/workouts"))
    assert second > first
    assert queue.count() == 2


def test_enqueued_item_survives_restart(tmp_path, network):
    database_url = f"sqlite:///{tmp_path / 'queue.db'}"
    original = MutationQueue(create_session_factory(database_url), network)
    mutation_id = original.enqueue(_post("/api/wellness", body=b'{"sleep": 8}'))

    restarted = MutationQueue(create_session_factory(database_url), network)
    stored = restarted.get(mutation_id)

    assert stored is not None
    assert stored.method == "POST"
    assert stored.url == url("/api/wellness")
    assert stored.body == b'{"sleep": 8}'
    assert stored.header_dict["Content-Type"] == "application/json"


def test_pending_is_fifo(queue):
    ids = [queue.enqueue(_post(f"/api/items/{i}")) for i in range(3)]
    assert [mutation.id for mutation in queue.pending()] == ids


# =============================================================================
# Drain
# =============================================================================

def test_drain_keeps_only_failed_item(queue, network):
    for i in (1, 2, 3):
        network.respond(url(f"/api/items/{i}"), method="POST", status=201)
    ids = [queue.enqueue(_post(f"/api/items/{i}")) for i in (1, 2, 3)]
    network.failing.add(url("/api/items/2"))

    result = queue.drain()

    assert result.succeeded == [ids[0], ids[2]]
    assert result.failed == [ids[1]]
    assert [mutation.id for mutation in queue.pending()] == [ids[1]]


def test_drain_replays_in_enqueue_order(queue, network):
    for i in range(3):
        network.respond(url(f"/api/items/{i}"), method="POST")
        queue.enqueue(_post(f"/api/items/{i}"))

    queue.drain()
    replayed = [call.url for call in network.calls if call.method == "POST"]
    assert replayed == [url(f"/api/items/{i}") for i in range(3)]


def test_replay_sends_original_body_and_headers(queue, network):
    network.respond(url("/api/injuries"), method="PUT")
    queue.enqueue(FetchRequest(url=url("/api/injuries"), method="PUT",
                               headers={"Authorization": "Bearer abc"}, body=b"payload"))

    queue.drain()
    call = network.calls[-1]
    assert call.method == "PUT"
    assert call.body == b"payload"
    assert call.headers["authorization"] == "Bearer abc"


def test_server_error_keeps_item_client_error_removes_it(queue, network):
    network.respond(url("/api/a"), method="POST", status=503)
    network.respond(url("/api/b"), method="POST", status=422)
    kept = queue.enqueue(_post("/api/a"))
    dropped = queue.enqueue(_post("/api/b"))

    result = queue.drain()
    assert result.failed == [kept]
    assert result.succeeded == [dropped]


def test_successful_replay_notifies_pages(queue, network, platform):
    page = platform.clients.add(url("/player"))
    network.respond(url("/api/wellness"), method="POST", status=201)
    mutation_id = queue.enqueue(_post("/api/wellness"))

    queue.drain()
    assert page.messages == [{
        "type": "sync-success",
        "data": {"id": mutation_id, "method": "POST", "url": url("/api/wellness"), "status": 201},
    }]


def test_drain_of_empty_queue(queue):
    result = queue.drain()
    assert result.to_dict() == {"succeeded": [], "failed": []}


def test_concurrent_drains_are_coalesced(queue, network):
    network.respond(url("/api/items/1"), method="POST")
    queue.enqueue(_post("/api/items/1"))
    network.gate = threading.Event()

    results = []
    threads = [threading.Thread(target=lambda: results.append(queue.drain())) for _ in range(3)]
    threads[0].start()
    while network.calls_to(url("/api/items/1"), method="POST") == 0:
        time.sleep(0.01)
    for thread in threads[1:]:
        thread.start()
    network.gate.set()
    for thread in threads:
        thread.join(timeout=5)

    assert network.calls_to(url("/api/items/1"), method="POST") == 1
    assert len(results) == 3
    assert queue.count() == 0


def test_items_enqueued_during_drain_wait_for_next_drain(queue, network):
    network.respond(url("/api/items/1"), method="POST")
    network.respond(url("/api/items/2"), method="POST")
    queue.enqueue(_post("/api/items/1"))
    network.gate = threading.Event()

    outcome = {}
    drainer = threading.Thread(target=lambda: outcome.setdefault("result", queue.drain()))
    drainer.start()
    while network.calls_to(url("/api/items/1"), method="POST") == 0:
        time.sleep(0.01)
    late = queue.enqueue(_post("/api/items/2"))
    network.gate.set()
    drainer.join(timeout=5)

    assert late not in outcome["result"].succeeded
    assert [mutation.id for mutation in queue.pending()] == [late]

    network.gate = None
    assert queue.drain().succeeded == [late]


# =============================================================================
# Targeted replay
# =============================================================================

def test_replay_single_item(queue, network):
    network.respond(url("/api/workouts/5/complete"), method="POST")
    other = queue.enqueue(_post("/api/workouts/4/complete"))
    target = queue.enqueue(_post("/api/workouts/5/complete"))

    assert queue.replay(target) is True
    assert [mutation.id for mutation in queue.pending()] == [other]


def test_replay_missing_item(queue):
    assert queue.replay(999) is False


def test_clear(queue):
    queue.enqueue(_post("/api/a"))
    queue.enqueue(_post("/api/b"))
    assert queue.clear() == 2
    assert queue.count() == 0


@pytest.mark.parametrize("tag,expected", [
    ("sync-workout-12", 12),
    ("sync-workout-", None),
    ("sync-workout-abc", None),
    ("sync-mutations", None),
])
def test_item_id_from_tag(tag, expected):
    assert item_id_from_tag(tag) == expected


# =============================================================================
# SingleFlight
# =============================================================================

def test_single_flight_propagates_errors():
    flight = SingleFlight()

    def fail():
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        flight.run("drain", fail)
    # The failed run is not left in flight
    assert flight.run("drain", lambda: "next") == ("next", False)


def test_single_flight_sequential_runs_are_independent():
    flight = SingleFlight()
    assert flight.run("drain", lambda: 1) == (1, False)
    assert flight.run("drain", lambda: 2) == (2, False)
