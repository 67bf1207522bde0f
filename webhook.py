import functools
import logging
import ssl
import sys

import pydantic

from flask import Flask, request, jsonify, current_app

from models import (
    BaseModel,
    AdmissionResponse,
    AdmissionReview,
    AdmissionReviewStatus,
    WebhookConfig,
    MUTATE_ANNOTATION,
    STATUS_ANNOTATION,
)
from exc import (
    ApplicationError,
    ContentTypeError,
    DecodeError,
    EmptyBodyError,
    EncodeError,
)

import policy

LOG = logging.getLogger(__name__)
logging.basicConfig(level=logging.INFO)


class DEFAULTS:
    WHITELIST_REGISTRIES = ""
    MUTATE_ANNOTATION = MUTATE_ANNOTATION
    STATUS_ANNOTATION = STATUS_ANNOTATION
    CERT_FILE = "/etc/webhook/certs/tls.crt"
    KEY_FILE = "/etc/webhook/certs/tls.key"
    PORT = 443


HANDLERS = {
    "/validate": policy.validate,
    "/mutate": policy.mutate,
}


def jsonresponse():
    """Transforms the response from a view function into a JSON object.

    Fields that are unset (None) are left out of the document. A response
    that cannot be serialized becomes an EncodeError.
    """

    def _outer(func):
        @functools.wraps(func)
        def _inner(*args, **kwargs):
            res = func(*args, **kwargs)
            try:
                if isinstance(res, BaseModel):
                    return jsonify(res.model_dump(mode="json", exclude_none=True))
                else:
                    return jsonify(res)
            except (TypeError, ValueError) as err:
                LOG.error("can not encode response: %s", err)
                raise EncodeError(f"Can not encode response: {err}")

        return _inner

    return _outer


def decode_review(body: bytes) -> AdmissionReview:
    try:
        return AdmissionReview.model_validate_json(body)
    except pydantic.ValidationError as err:
        LOG.error("can not decode body: %s", err)
        raise DecodeError(str(err))


def dispatch(
    path: str, review: AdmissionReview, config: WebhookConfig
) -> AdmissionResponse:
    """Run the policy registered for `path` against the review's request."""

    handler = HANDLERS.get(path)
    if handler is None:
        LOG.warning("no admission handler for path %s", path)
        return AdmissionResponse(
            allowed=False,
            status=AdmissionReviewStatus(
                code=404, message=f"no admission handler for path {path}"
            ),
        )

    if review.request is None:
        return AdmissionResponse(
            allowed=False,
            status=AdmissionReviewStatus(
                code=400, message="AdmissionReview contains no request"
            ),
        )

    return handler(review.request, config)


def assemble(
    review: AdmissionReview | None, response: AdmissionResponse
) -> AdmissionReview:
    """Wrap `response` in an envelope that echoes the inbound review's
    apiVersion, kind and request uid."""

    if review is None:
        return AdmissionReview(response=response)

    if review.request is not None:
        response = response.model_copy(update={"uid": review.request.uid})

    return AdmissionReview(
        apiVersion=review.apiVersion, kind=review.kind, response=response
    )


@jsonresponse()
def admit():
    if request.mimetype != "application/json":
        LOG.error("Content-Type is %s, expected application/json", request.content_type)
        raise ContentTypeError("Content-Type invalid, expected application/json")

    body = request.get_data()
    if not body:
        LOG.error("empty data body")
        raise EmptyBodyError("empty data body")

    review = None
    try:
        review = decode_review(body)
    except DecodeError as err:
        response = policy.deny(err)
    else:
        response = dispatch(request.path, review, current_app.webhook_config)

    result = assemble(review, response)
    LOG.info("sending response: %s", result.response)
    return result


def handle_applicationerror(err):
    return str(err), err.status_code, {"content-type": "text/plain"}


def health():
    return "OK", 200, {"content-type": "text/plain"}


def create_app(**config) -> Flask:
    """Use an application factory [1] to create the Flask app.

    Configuration comes from DEFAULTS, then ADMISSION_* environment
    variables, then keyword arguments. It is frozen into a WebhookConfig
    available as `app.webhook_config`.

    [1]: https://flask.palletsprojects.com/en/3.0.x/patterns/appfactories/
    """

    app = Flask(__name__)
    app.config.from_object(DEFAULTS)
    app.config.from_prefixed_env("ADMISSION")
    if config:
        app.config.update(config)

    try:
        app.webhook_config = WebhookConfig(
            whitelist_registries=app.config["WHITELIST_REGISTRIES"],
            mutate_annotation=app.config["MUTATE_ANNOTATION"],
            status_annotation=app.config["STATUS_ANNOTATION"],
        )
    except pydantic.ValidationError as err:
        LOG.error("Invalid webhook configuration: %s", err)
        sys.exit(1)

    LOG.info("whitelisted registries: %s", app.webhook_config.whitelist_registries)

    app.errorhandler(ApplicationError)(handle_applicationerror)
    app.add_url_rule("/healthz", view_func=health)
    for path in HANDLERS:
        app.add_url_rule(
            path, endpoint=path.strip("/"), view_func=admit, methods=["POST"]
        )

    return app


def main():
    app = create_app()

    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    try:
        context.load_cert_chain(app.config["CERT_FILE"], app.config["KEY_FILE"])
    except OSError as err:
        LOG.error("Failed to load key pair: %s", err)
        sys.exit(1)

    LOG.info("Server started")
    app.run(host="0.0.0.0", port=int(app.config["PORT"]), ssl_context=context)


if __name__ == "__main__":
    main()
