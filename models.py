import base64
from typing import Any, Literal
from pydantic import (
    BaseModel,
    ConfigDict,
    RootModel,
    model_validator,
    field_validator,
)
from enum import StrEnum


API_VERSION = "admission.k8s.io/v1"

MUTATE_ANNOTATION = "admission-registry/mutate"
STATUS_ANNOTATION = "admission-registry/status"


class Operation(StrEnum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    CONNECT = "CONNECT"


class PatchType(StrEnum):
    JSONPatch = "JSONPatch"


class PatchOp(StrEnum):
    REPLACE = "replace"
    ADD = "add"
    REMOVE = "remove"


class PatchAction(BaseModel):
    op: PatchOp
    path: str
    value: str | dict[str, str] | None = None


# https://jsonpatch.com/
Patch = RootModel[list[PatchAction]]


# https://kubernetes.io/docs/reference/generated/kubernetes-api/v1.30/#status-v1-meta
class AdmissionReviewStatus(BaseModel):
    code: int | None = None
    message: str | None = None


# https://kubernetes.io/docs/reference/config-api/apiserver-admission.v1/#admission-k8s-io-v1-AdmissionResponse
class AdmissionResponse(BaseModel):
    uid: str = ""
    allowed: bool = False
    status: AdmissionReviewStatus | None = None
    patchType: PatchType | None = None
    patch: str | None = None

    @field_validator("patch", mode="before")
    @classmethod
    def validate_patch(cls, val):
        if isinstance(val, Patch):
            val = base64.b64encode(val.model_dump_json(exclude_none=True).encode())
        elif isinstance(val, (str, bytes)):
            # Make sure the base64 string contains valid data.
            Patch.model_validate_json(base64.b64decode(val))
        if isinstance(val, bytes):
            val = val.decode()
        return val

    @model_validator(mode="after")
    def validate_model(self):
        if self.patch and not self.patchType:
            raise ValueError("missing patchType field")
        if self.patchType and not self.patch:
            raise ValueError(f"patchType is {self.patchType} but there is no patch")
        if self.patch and not self.allowed:
            raise ValueError("a patch can only be sent with an allowed response")

        return self


# https://kubernetes.io/docs/reference/generated/kubernetes-api/v1.30/#groupversionkind-v1-meta
class GroupVersionKind(BaseModel):
    group: str = ""
    version: str = ""
    kind: str


# https://kubernetes.io/docs/reference/config-api/apiserver-admission.v1/#admission-k8s-io-v1-AdmissionRequest
class AdmissionRequest(BaseModel):
    uid: str
    kind: GroupVersionKind
    namespace: str | None = None
    name: str | None = None
    operation: Operation = Operation.CREATE
    object: dict[str, Any] | None = None


# https://kubernetes.io/docs/reference/config-api/apiserver-admission.v1/#admission-k8s-io-v1-AdmissionReview
class AdmissionReview(BaseModel):
    apiVersion: Literal["admission.k8s.io/v1"] = API_VERSION
    kind: Literal["AdmissionReview"] = "AdmissionReview"
    request: AdmissionRequest | None = None
    response: AdmissionResponse | None = None

    @model_validator(mode="after")
    def validate_model(self):
        if not (self.request or self.response):
            raise ValueError("must contain a request or a response")

        return self


class Metadata(BaseModel):
    name: str | None = None
    namespace: str | None = None
    annotations: dict[str, str] | None = None


class Container(BaseModel):
    image: str


class PodSpec(BaseModel):
    containers: list[Container] = []


class Pod(BaseModel):
    metadata: Metadata = Metadata()
    spec: PodSpec = PodSpec()


class Deployment(BaseModel):
    metadata: Metadata = Metadata()


class Service(BaseModel):
    metadata: Metadata = Metadata()


class Unsupported(BaseModel):
    kind: str


class WebhookConfig(BaseModel):
    """Process-wide settings, built once by the application factory."""

    model_config = ConfigDict(frozen=True)

    whitelist_registries: tuple[str, ...]
    mutate_annotation: str = MUTATE_ANNOTATION
    status_annotation: str = STATUS_ANNOTATION

    @field_validator("whitelist_registries", mode="before")
    @classmethod
    def split_registries(cls, val):
        if isinstance(val, str):
            val = val.split(",")
        if not isinstance(val, (list, tuple)) or not all(
            isinstance(registry, str) for registry in val
        ):
            raise ValueError(
                "whitelisted registries must be a comma-separated string or a list of strings"
            )
        return tuple(registry.strip() for registry in val if registry.strip())

    @field_validator("whitelist_registries")
    @classmethod
    def require_registries(cls, val):
        if not val:
            raise ValueError("at least one whitelisted registry is required")
        return val
