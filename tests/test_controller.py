import threading

import pytest
from kubernetes.client import V1ObjectMeta, V1OwnerReference, V1Service
from kubernetes.client.exceptions import ApiException

from conftest import make_md
from kaimera.api import create_app
from kaimera.controller import Controller, WorkQueue, _request_for_model_deployment, _request_for_owned, retry_delay
from kaimera.reconciler import Reconciler
from kaimera.types import Request

A = Request(namespace="default", name="a")
B = Request(namespace="default", name="b")


def test_queue_deduplicates_pending_requests():
    q = WorkQueue()
    q.add(A)
    q.add(B)
    q.add(A)

    assert len(q) == 2
    assert q.get(timeout=0) == A
    assert q.get(timeout=0) == B
    assert q.get(timeout=0) is None


def test_request_in_flight_is_held_until_done():
    q = WorkQueue()
    q.add(A)
    assert q.get(timeout=0) == A

    q.add(A)
    assert q.get(timeout=0) is None

    q.done(A)
    assert q.get(timeout=0) == A
    q.done(A)
    assert q.get(timeout=0) is None


def test_queue_shutdown_drops_new_work():
    q = WorkQueue()
    q.shutdown()
    q.add(A)
    assert q.get(timeout=0) is None


def test_get_wakes_up_when_work_arrives():
    q = WorkQueue()
    got = []
    t = threading.Thread(target=lambda: got.append(q.get(timeout=5)))
    t.start()
    q.add(B)
    t.join(timeout=5)
    assert got == [B]


def test_model_deployment_events_map_to_their_identity():
    obj = {"metadata": {"name": "llama-7b", "namespace": "ml"}}
    assert _request_for_model_deployment(obj) == Request(namespace="ml", name="llama-7b")
    assert _request_for_model_deployment({"metadata": {"name": "x"}}) is None
    assert _request_for_model_deployment(None) is None


def test_owned_child_events_map_to_their_owner():
    owned = V1Service(metadata=V1ObjectMeta(name="svc", namespace="ml", owner_references=[
        V1OwnerReference(api_version="kaimera.ai/v1", kind="ModelDeployment", name="llama-7b", uid="u", controller=True)
    ]))
    foreign = V1Service(metadata=V1ObjectMeta(name="svc", namespace="ml", owner_references=[
        V1OwnerReference(api_version="other.io/v1", kind="ModelDeployment", name="x", uid="u", controller=True)
    ]))
    unowned = V1Service(metadata=V1ObjectMeta(name="svc", namespace="ml"))

    assert _request_for_owned(owned) == Request(namespace="ml", name="llama-7b")
    assert _request_for_owned(foreign) is None
    assert _request_for_owned(unowned) is None


@pytest.fixture
def controller(fake_cp):
    return Controller(fake_cp, Reconciler(fake_cp), namespace="default")


def test_process_next_reconciles_and_records_result(fake_cp, controller):
    md = make_md(name="a")
    fake_cp.model_deployments[("default", "a")] = md

    controller.enqueue(A)
    result = controller.process_next(timeout=0)

    assert result.ok
    assert controller.results()[A] is result
    assert ("default", "a") in fake_cp.deployments
    assert controller.process_next(timeout=0) is None


def test_failed_reconcile_is_retried_after_a_delay(fake_cp):
    controller = Controller(fake_cp, Reconciler(fake_cp), namespace="default", backoff_base_s=0.05)
    fake_cp.model_deployments[("default", "a")] = make_md(name="a")
    fake_cp.fail["create_deployment"] = ApiException(status=503, reason="Service Unavailable")

    controller.enqueue(A)
    result = controller.process_next(timeout=0)

    assert result.requeue
    assert controller.failure_count(A) == 1
    assert len(controller.queue) == 0
    assert controller.queue.delayed() == 1

    del fake_cp.fail["create_deployment"]
    retried = controller.process_next(timeout=2)

    assert retried is not None and retried.ok
    assert controller.failure_count(A) == 0
    assert ("default", "a") in fake_cp.deployments


def test_permanent_failure_is_not_retried(fake_cp, controller):
    fake_cp.model_deployments[("default", "a")] = make_md(name="a", runtime="tpu")

    controller.enqueue(A)
    result = controller.process_next(timeout=0)

    assert not result.ok
    assert not result.requeue
    assert controller.failure_count(A) == 0
    assert controller.queue.delayed() == 0


def test_consecutive_failures_back_off_further(fake_cp):
    controller = Controller(fake_cp, Reconciler(fake_cp), namespace="default", backoff_base_s=0.01)
    fake_cp.model_deployments[("default", "a")] = make_md(name="a")
    fake_cp.fail["get_deployment"] = ApiException(status=500, reason="Internal Server Error")

    controller.enqueue(A)
    for attempt in range(1, 4):
        result = controller.process_next(timeout=2)
        assert result.requeue
        assert controller.failure_count(A) == attempt


def test_retry_delay_doubles_up_to_the_cap():
    assert retry_delay(0, base=1.0, cap=60.0) == 0.0
    assert [retry_delay(n, base=1.0, cap=60.0) for n in range(1, 6)] == [1.0, 2.0, 4.0, 8.0, 16.0]
    assert retry_delay(10, base=1.0, cap=60.0) == 60.0


def test_delayed_request_becomes_available_after_its_delay():
    q = WorkQueue()
    q.add_after(A, 0.05)

    assert q.get(timeout=0) is None
    assert q.delayed() == 1
    assert q.get(timeout=2) == A
    assert q.delayed() == 0


def test_add_after_without_delay_queues_immediately():
    q = WorkQueue()
    q.add_after(A, 0)
    assert q.get(timeout=0) == A


def test_earlier_retry_replaces_a_later_one():
    q = WorkQueue()
    q.add_after(A, 30)
    q.add_after(A, 0.01)

    assert q.delayed() == 1
    assert q.get(timeout=2) == A


def test_shutdown_drops_delayed_requests():
    q = WorkQueue()
    q.add_after(A, 0.01)
    q.shutdown()

    assert q.delayed() == 0
    assert q.get(timeout=0.1) is None



def test_probes_follow_controller_state(fake_cp, controller):
    client = create_app(controller).test_client()

    assert client.get("/healthz").status_code == 200
    assert client.get("/readyz").status_code == 503

    controller._running = True
    assert client.get("/readyz").status_code == 200


def test_status_lists_last_results(fake_cp, controller):
    fake_cp.model_deployments[("default", "a")] = make_md(name="a")
    fake_cp.fail["get_model_deployment"] = ApiException(status=403, reason="Forbidden")
    controller.enqueue(A)
    controller.process_next(timeout=0)
    del fake_cp.fail["get_model_deployment"]
    controller.enqueue(B)
    controller.process_next(timeout=0)

    resp = create_app(controller).test_client().get("/status")

    assert resp.status_code == 200
    data = resp.get_json()
    assert data["running"] is False
    assert data["delayed"] == 1
    first, second = data["items"]
    assert (first["name"], first["ok"], first["requeue"]) == ("a", False, True)
    assert "Forbidden" in first["error"]
    assert first["actions"] == []
    assert (second["name"], second["ok"], second["error"]) == ("b", True, None)


def test_status_without_controller():
    client = create_app(None).test_client()
    assert client.get("/status").status_code == 503
    assert client.get("/readyz").status_code == 503
