import base64
import json

import pytest

from unittest import mock

import webhook

from conftest import admission_review, pod, workload
from models import AdmissionReview, STATUS_ANNOTATION


def test_invalid_path(client):
    """We expect a 404 response for invalid paths"""
    res = client.post("/test-path", json=admission_review("Pod", pod()))
    assert res.status_code == 404


def test_invalid_method(client):
    """We expect a 405 ("method not allowed") response if we GET /validate
    instead of POST"""
    res = client.get("/validate")
    assert res.status_code == 405


def test_health(client):
    """We expect a 200 response from the /healthz endpoint"""
    res = client.get("/healthz")
    assert res.status_code == 200
    assert res.text == "OK"


def test_invalid_media_type(client):
    """A request that is not application/json is rejected before decoding,
    with a plain text body instead of an AdmissionReview"""
    res = client.post(
        "/validate",
        headers={"content-type": "text/plain"},
        data=json.dumps(admission_review("Pod", pod("internal.registry/app"))),
    )
    assert res.status_code == 400
    assert res.mimetype == "text/plain"
    assert "Content-Type invalid" in res.text


def test_missing_media_type(client):
    res = client.post("/mutate", data="{}")
    assert res.status_code == 400
    assert "Content-Type invalid" in res.text


def test_media_type_with_charset(client):
    res = client.post(
        "/validate",
        headers={"content-type": "application/json; charset=utf-8"},
        data=json.dumps(admission_review("Pod", pod("internal.registry/app"))),
    )
    assert res.status_code == 200
    assert res.json["response"]["allowed"]


def test_empty_body(client):
    res = client.post(
        "/validate", headers={"content-type": "application/json"}, data=""
    )
    assert res.status_code == 400
    assert res.text == "empty data body"


def test_not_json(client):
    """A body that cannot be decoded is still answered with a well-formed
    AdmissionReview"""
    res = client.post(
        "/validate",
        headers={"content-type": "application/json"},
        data="Ceci n'est pas JSON",
    )
    assert res.status_code == 200
    assert res.json["apiVersion"] == "admission.k8s.io/v1"
    assert res.json["kind"] == "AdmissionReview"
    response = res.json["response"]
    assert response["allowed"] is False
    assert response["uid"] == ""
    assert response["status"]["code"] == 500
    assert response["status"]["message"]


def test_empty_json(client):
    res = client.post("/mutate", json={})
    assert res.status_code == 200
    assert res.json["response"]["allowed"] is False
    assert res.json["response"]["status"]["code"] == 500
    assert "must contain a request or a response" in res.json["response"]["status"]["message"]


def test_unregistered_api_version(client):
    body = admission_review("Pod", pod("internal.registry/app"))
    body["apiVersion"] = "admission.k8s.io/v1beta1"
    res = client.post("/validate", json=body)
    assert res.status_code == 200
    assert res.json["response"]["allowed"] is False
    assert res.json["response"]["status"]["code"] == 500


def test_review_without_request(client):
    body = {
        "apiVersion": "admission.k8s.io/v1",
        "kind": "AdmissionReview",
        "response": {"uid": "abcd", "allowed": True},
    }
    res = client.post("/validate", json=body)
    assert res.status_code == 200
    assert res.json["response"] == {
        "uid": "",
        "allowed": False,
        "status": {"code": 400, "message": "AdmissionReview contains no request"},
    }


def test_validate_untrusted_registry(client):
    res = client.post(
        "/validate",
        json=admission_review(
            "Pod", pod("docker.io/app", "internal.registry/base"), uid="uid-a"
        ),
    )
    assert res.status_code == 200
    assert res.json["apiVersion"] == "admission.k8s.io/v1"
    assert res.json["kind"] == "AdmissionReview"
    response = res.json["response"]
    assert response["uid"] == "uid-a"
    assert response["allowed"] is False
    assert response["status"]["code"] == 403
    assert "docker.io/app" in response["status"]["message"]
    assert "internal.registry" in response["status"]["message"]
    assert "quay.io/trusted" in response["status"]["message"]
    assert "patch" not in response


def test_validate_trusted_registry(client):
    res = client.post(
        "/validate",
        json=admission_review(
            "Pod", pod("internal.registry/app:1.0", "internal.registry/base")
        ),
    )
    assert res.status_code == 200
    assert res.json["response"] == {
        "uid": "1234",
        "allowed": True,
        "status": {"code": 200},
    }


def test_mutate_adds_status_annotation(client):
    res = client.post(
        "/mutate", json=admission_review("Deployment", workload(), uid="uid-c")
    )
    assert res.status_code == 200
    response = res.json["response"]
    assert response["uid"] == "uid-c"
    assert response["allowed"]
    assert response["patchType"] == "JSONPatch"
    have_patch = json.loads(base64.b64decode(response["patch"]))
    assert have_patch == [
        {
            "op": "add",
            "path": "/metadata/annotations",
            "value": {STATUS_ANNOTATION: "mutated"},
        }
    ]


def test_mutate_already_mutated(client):
    res = client.post(
        "/mutate",
        json=admission_review(
            "Deployment", workload({STATUS_ANNOTATION: "mutated"}), uid="uid-d"
        ),
    )
    assert res.status_code == 200
    assert res.json["response"] == {"uid": "uid-d", "allowed": True}


def test_mutate_unsupported_kind(client):
    res = client.post(
        "/mutate", json=admission_review("ConfigMap", workload(), uid="uid-e")
    )
    assert res.status_code == 200
    response = res.json["response"]
    assert response["uid"] == "uid-e"
    assert response["allowed"] is False
    assert response["status"]["code"] == 400
    assert "ConfigMap" in response["status"]["message"]


def test_encode_failure(client):
    """If the response envelope cannot be serialized we answer with a raw
    400 instead of an AdmissionReview"""
    with mock.patch("webhook.jsonify") as mock_jsonify:
        mock_jsonify.side_effect = TypeError("not serializable")
        res = client.post(
            "/validate", json=admission_review("Pod", pod("internal.registry/app"))
        )

    assert res.status_code == 400
    assert res.text == "Can not encode response: not serializable"


def test_missing_whitelist():
    with pytest.raises(SystemExit):
        webhook.create_app(WHITELIST_REGISTRIES="", TESTING=True)


def test_non_string_whitelist(monkeypatch):
    """A JSON-decoded environment value that is not a string or list is a
    configuration error, not a crash"""
    monkeypatch.setenv("ADMISSION_WHITELIST_REGISTRIES", "123")
    with pytest.raises(SystemExit) as exc_info:
        webhook.create_app(TESTING=True)

    assert exc_info.value.code == 1


def test_whitelist_from_list(app):
    assert app.webhook_config.whitelist_registries == (
        "internal.registry",
        "quay.io/trusted",
    )


def test_dispatch_unknown_path(config):
    review = AdmissionReview.model_validate(admission_review("Pod", pod()))
    response = webhook.dispatch("/other", review, config)
    assert response.allowed is False
    assert response.status.code == 404
    assert "/other" in response.status.message


def test_assemble_echoes_uid(config):
    review = AdmissionReview.model_validate(
        admission_review("Deployment", workload(), uid="echo-me")
    )
    result = webhook.assemble(review, webhook.dispatch("/mutate", review, config))
    assert result.response.uid == "echo-me"
    assert result.apiVersion == review.apiVersion
    assert result.kind == review.kind
    assert result.request is None
