import logging

import pytest

import validate


def container(name, cpu=None, memory=None):
    requests = {}
    if cpu is not None:
        requests["cpu"] = cpu
    if memory is not None:
        requests["memory"] = memory

    return {
        "name": name,
        "image": "docker.io/library/nginx:latest",
        "resources": {"requests": requests},
    }


def create_review(
    pod_object, uid="test-uid-123", kind="Pod", api_version="admission.k8s.io/v1"
):
    """Helper function to create an admission review request."""
    return {
        "apiVersion": api_version,
        "kind": "AdmissionReview",
        "request": {
            "uid": uid,
            "kind": {"group": "", "version": "v1", "kind": kind},
            "resource": {"group": "", "version": "v1", "resource": "pods"},
            "namespace": "default",
            "operation": "CREATE",
            "object": pod_object,
        },
    }


def create_pod(*containers, name="test-pod"):
    return {
        "apiVersion": "v1",
        "kind": "Pod",
        "metadata": {"name": name, "namespace": "default"},
        "spec": {"containers": list(containers)},
    }


@pytest.fixture()
def admission_log():
    return logging.getLogger("tests.admission")


@pytest.fixture()
def app(admission_log):
    app = validate.create_app(
        TESTING=True,
        ADMISSION_LOG=admission_log,
    )
    yield app


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def two_container_pod():
    return create_pod(
        container("app", cpu="500m", memory="128Mi"),
        container("sidecar", cpu="500m", memory="256Mi"),
    )
