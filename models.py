import base64
from typing import Any, Literal
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    RootModel,
    model_validator,
    field_validator,
)
from enum import StrEnum


class ApiVersion(StrEnum):
    V1 = "admission.k8s.io/v1"
    V1BETA1 = "admission.k8s.io/v1beta1"


class Operation(StrEnum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    CONNECT = "CONNECT"


class PatchType(StrEnum):
    JSONPatch = "JSONPatch"


class PatchOp(StrEnum):
    ADD = "add"
    REMOVE = "remove"
    REPLACE = "replace"
    MOVE = "move"
    COPY = "copy"
    TEST = "test"


class PatchAction(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    op: PatchOp
    path: str
    value: Any = None
    from_: str | None = Field(default=None, alias="from")

    @model_validator(mode="after")
    def validate_model(self):
        if self.op in (PatchOp.MOVE, PatchOp.COPY) and self.from_ is None:
            raise ValueError(f"{self.op} operation requires a from field")
        if self.op in (PatchOp.ADD, PatchOp.REPLACE, PatchOp.TEST) and (
            "value" not in self.model_fields_set
        ):
            raise ValueError(f"{self.op} operation requires a value field")

        return self


# https://jsonpatch.com/
Patch = RootModel[list[PatchAction]]


# https://kubernetes.io/docs/reference/generated/kubernetes-api/v1.30/#status-v1-meta
class AdmissionReviewStatus(BaseModel):
    message: str


# https://kubernetes.io/docs/reference/config-api/apiserver-admission.v1/#admission-k8s-io-v1-AdmissionResponse
class AdmissionResponse(BaseModel):
    allowed: bool
    status: AdmissionReviewStatus | None = None
    uid: str = ""
    patchType: PatchType | None = None
    patch: str | None = None

    @field_validator("patch", mode="before")
    @classmethod
    def validate_patch(cls, val):
        if isinstance(val, Patch):
            val = base64.b64encode(
                val.model_dump_json(by_alias=True, exclude_unset=True).encode()
            ).decode()
        elif isinstance(val, bytes):
            # Raw JSON Patch document, as produced by patch.create_patch.
            Patch.model_validate_json(val)
            val = base64.b64encode(val).decode()
        elif isinstance(val, str):
            # Make sure the base64 string contains valid data.
            Patch.model_validate_json(base64.b64decode(val))
        return val

    @model_validator(mode="after")
    def validate_model(self):
        if self.patch and not self.patchType:
            raise ValueError("missing patchType field")
        if self.patchType and not self.patch:
            raise ValueError(f"patchType is {self.patchType} but there is no patch")

        return self


class GroupVersionKind(BaseModel):
    group: str = ""
    version: str = ""
    kind: str = ""


class GroupVersionResource(BaseModel):
    model_config = ConfigDict(frozen=True)

    group: str = ""
    version: str = ""
    resource: str = ""

    def __str__(self):
        return f"{self.group}/{self.version}/{self.resource}"


# https://kubernetes.io/docs/reference/config-api/apiserver-admission.v1/#admission-k8s-io-v1-AdmissionRequest
class AdmissionRequest(BaseModel):
    uid: str = Field(min_length=1)
    kind: GroupVersionKind | None = None
    resource: GroupVersionResource = GroupVersionResource()
    namespace: str = ""
    name: str | None = None
    operation: Operation = Operation.CREATE
    object: dict[str, Any] | None = None
    oldObject: dict[str, Any] | None = None


# https://kubernetes.io/docs/reference/config-api/apiserver-admission.v1/#admission-k8s-io-v1-AdmissionReview
class AdmissionReview(BaseModel):
    apiVersion: ApiVersion = ApiVersion.V1
    kind: Literal["AdmissionReview"] = "AdmissionReview"
    request: AdmissionRequest | None = None
    response: AdmissionResponse | None = None

    @model_validator(mode="after")
    def validate_model(self):
        if not (self.request or self.response):
            raise ValueError("must contain a request or a response")

        return self


def to_admission_response(err: Exception) -> AdmissionResponse:
    """Build a rejecting response carrying the error message."""
    return AdmissionResponse(
        allowed=False, status=AdmissionReviewStatus(message=str(err))
    )
