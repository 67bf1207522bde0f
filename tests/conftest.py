import pytest

import webhook

from models import WebhookConfig


WHITELIST = ["internal.registry", "quay.io/trusted"]


@pytest.fixture()
def config():
    return WebhookConfig(whitelist_registries=WHITELIST)


@pytest.fixture()
def app():
    app = webhook.create_app(
        WHITELIST_REGISTRIES=",".join(WHITELIST),
        TESTING=True,
    )
    yield app


@pytest.fixture()
def client(app):
    return app.test_client()


def pod(*images):
    return {
        "apiVersion": "v1",
        "kind": "Pod",
        "metadata": {"name": "test-pod", "namespace": "default"},
        "spec": {
            "containers": [
                {"name": f"container-{i}", "image": image}
                for i, image in enumerate(images)
            ]
        },
    }


def workload(annotations=None):
    metadata = {"name": "test-workload", "namespace": "default"}
    if annotations is not None:
        metadata["annotations"] = annotations
    return {"metadata": metadata}


def admission_review(kind, obj, uid="1234"):
    group = "apps" if kind == "Deployment" else ""
    return {
        "apiVersion": "admission.k8s.io/v1",
        "kind": "AdmissionReview",
        "request": {
            "uid": uid,
            "kind": {"group": group, "version": "v1", "kind": kind},
            "namespace": "default",
            "name": "test",
            "operation": "CREATE",
            "object": obj,
        },
    }
