import base64
import logging
import pydantic

from exc import (
    AdmissionError,
    DeserializeTargetError,
    PatchMarshalError,
    PolicyViolationError,
    UnsupportedKindError,
)
from models import (
    AdmissionRequest,
    AdmissionResponse,
    AdmissionReviewStatus,
    Deployment,
    Metadata,
    PatchType,
    Pod,
    Service,
    Unsupported,
    WebhookConfig,
)
from patch import marshal_patch, mutate_annotations

LOG = logging.getLogger(__name__)

OPT_OUT_VALUES = frozenset(["n", "no", "false", "off"])
MUTATED = "mutated"


def log_request(req: AdmissionRequest):
    LOG.info(
        "AdmissionReview for kind=%s namespace=%s name=%s uid=%s",
        req.kind.kind,
        req.namespace,
        req.name,
        req.uid,
    )


def deny(err: AdmissionError) -> AdmissionResponse:
    return AdmissionResponse(
        allowed=False,
        status=AdmissionReviewStatus(code=err.code, message=str(err)),
    )


def load_object(model, obj):
    try:
        return model.model_validate(obj)
    except pydantic.ValidationError as err:
        LOG.error("can not unmarshal object: %s", err)
        raise DeserializeTargetError(str(err))


def check_images(pod: Pod, whitelist: tuple[str, ...]):
    """Raise PolicyViolationError for the first container (in declaration
    order) whose image does not start with a whitelisted registry."""

    for container in pod.spec.containers:
        if not any(container.image.startswith(registry) for registry in whitelist):
            raise PolicyViolationError(
                f"{container.image} image comes from an untrusted registry! "
                f"Only images from [{', '.join(whitelist)}] are allowed"
            )


def validate(req: AdmissionRequest, config: WebhookConfig) -> AdmissionResponse:
    log_request(req)

    try:
        pod = load_object(Pod, req.object)
        check_images(pod, config.whitelist_registries)
    except AdmissionError as err:
        LOG.info("denying %s: %s", req.uid, err)
        return deny(err)

    return AdmissionResponse(allowed=True, status=AdmissionReviewStatus(code=200))


def resolve_target(req: AdmissionRequest) -> Deployment | Service | Unsupported:
    match req.kind.kind:
        case "Deployment":
            return load_object(Deployment, req.object)
        case "Service":
            return load_object(Service, req.object)
        case kind:
            return Unsupported(kind=kind)


def mutation_required(metadata: Metadata, config: WebhookConfig) -> bool:
    annotations = metadata.annotations or {}

    if annotations.get(config.mutate_annotation, "").lower() in OPT_OUT_VALUES:
        required = False
    else:
        required = True

    # Objects we have already patched are never patched again.
    if annotations.get(config.status_annotation, "").lower() == MUTATED:
        required = False

    LOG.info(
        "mutation policy for %s/%s: required=%s",
        metadata.namespace,
        metadata.name,
        required,
    )
    return required


def mutation_patch(
    target: Deployment | Service | Unsupported, config: WebhookConfig
) -> bytes | None:
    """Return the JSON patch to apply to `target`, or None if it needs no
    mutation."""

    match target:
        case Unsupported(kind=kind):
            raise UnsupportedKindError(kind)
        case Deployment() | Service():
            metadata = target.metadata

    if not mutation_required(metadata, config):
        return None

    actions = mutate_annotations(
        metadata.annotations, {config.status_annotation: MUTATED}
    )
    try:
        return marshal_patch(actions)
    except ValueError as err:
        LOG.error("patch marshal error: %s", err)
        raise PatchMarshalError(str(err))


def mutate(req: AdmissionRequest, config: WebhookConfig) -> AdmissionResponse:
    log_request(req)

    try:
        patch = mutation_patch(resolve_target(req), config)
    except AdmissionError as err:
        return deny(err)

    if patch is None:
        return AdmissionResponse(allowed=True)

    return AdmissionResponse(
        allowed=True,
        patchType=PatchType.JSONPatch,
        patch=base64.b64encode(patch),
    )
