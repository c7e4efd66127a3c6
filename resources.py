"""Typed views of the workloads this webhook knows how to mutate.

Every supported kind decodes into a pydantic model exposing the same small
surface (``annotations``, ``pod_spec`` and ``encode()``), so the mutation code
never needs to know whether it is looking at a bare Pod or a Deployment.

The models only describe the fields we read or write. Everything else in the
payload is kept as extra data, and ``encode()`` only emits fields that were
present in the payload or assigned afterwards. Decoding and re-encoding an
untouched object therefore gives back the same JSON document, which keeps the
generated patches minimal.
"""

import logging
from typing import Any
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from typing_extensions import Protocol

from exc import DecodeError, WrongResourceError
from models import AdmissionRequest, GroupVersionResource

LOG = logging.getLogger(__name__)


class KubeModel(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    def encode(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_unset=True)


class ObjectMeta(KubeModel):
    name: str | None = None
    namespace: str | None = None
    labels: dict[str, str] | None = None
    annotations: dict[str, str] | None = None


class VolumeMount(KubeModel):
    name: str
    mountPath: str


class Container(KubeModel):
    name: str
    image: str | None = None
    command: list[str] | None = None
    volumeMounts: list[VolumeMount] | None = None
    resources: dict[str, Any] | None = None


class SecretVolumeSource(KubeModel):
    secretName: str


class ConfigMapVolumeSource(KubeModel):
    name: str


class Volume(KubeModel):
    name: str
    emptyDir: dict[str, Any] | None = None
    secret: SecretVolumeSource | None = None
    configMap: ConfigMapVolumeSource | None = None


class PodSpec(KubeModel):
    containers: list[Container] = Field(default_factory=list)
    volumes: list[Volume] | None = None


class Pod(KubeModel):
    apiVersion: str | None = None
    kind: str | None = None
    metadata: ObjectMeta = Field(default_factory=ObjectMeta)
    spec: PodSpec

    @property
    def annotations(self) -> dict[str, str]:
        return self.metadata.annotations or {}

    @property
    def pod_spec(self) -> PodSpec:
        return self.spec

    @pod_spec.setter
    def pod_spec(self, spec: PodSpec):
        self.spec = spec


class PodTemplateSpec(KubeModel):
    metadata: ObjectMeta = Field(default_factory=ObjectMeta)
    spec: PodSpec


class DeploymentSpec(KubeModel):
    template: PodTemplateSpec


class Deployment(KubeModel):
    apiVersion: str | None = None
    kind: str | None = None
    metadata: ObjectMeta = Field(default_factory=ObjectMeta)
    spec: DeploymentSpec

    @property
    def annotations(self) -> dict[str, str]:
        return self.metadata.annotations or {}

    @property
    def pod_spec(self) -> PodSpec:
        return self.spec.template.spec

    @pod_spec.setter
    def pod_spec(self, spec: PodSpec):
        self.spec.template.spec = spec


class Workload(Protocol):
    @property
    def annotations(self) -> dict[str, str]: ...

    pod_spec: PodSpec

    def encode(self) -> dict[str, Any]: ...


POD_RESOURCE = GroupVersionResource(group="", version="v1", resource="pods")
DEPLOYMENT_RESOURCE = GroupVersionResource(
    group="apps", version="v1", resource="deployments"
)

SUPPORTED_RESOURCES: dict[GroupVersionResource, type[KubeModel]] = {
    POD_RESOURCE: Pod,
    DEPLOYMENT_RESOURCE: Deployment,
    GroupVersionResource(
        group="apps", version="v1beta1", resource="deployments"
    ): Deployment,
    GroupVersionResource(
        group="apps", version="v1beta2", resource="deployments"
    ): Deployment,
    GroupVersionResource(
        group="extensions", version="v1beta1", resource="deployments"
    ): Deployment,
}

# Used when the request does not say which version it refers to.
RESOURCES_BY_NAME: dict[str, type[KubeModel]] = {
    "pods": Pod,
    "deployments": Deployment,
}


def resource_model(resource: GroupVersionResource) -> type[KubeModel]:
    model = SUPPORTED_RESOURCES.get(resource)
    if model is None and not resource.version:
        model = RESOURCES_BY_NAME.get(resource.resource)
    if model is None:
        raise WrongResourceError()
    return model


def decode_workload(request: AdmissionRequest) -> Workload:
    """Decode the object carried by an admission request into its typed model.

    Raises WrongResourceError for resources this webhook does not handle and
    DecodeError when the object is missing or does not match the model.
    """
    model = resource_model(request.resource)

    if request.object is None:
        raise DecodeError(f"request {request.uid} does not contain an object")

    try:
        return model.model_validate(request.object)
    except ValidationError as err:
        LOG.warning("failed to decode %s: %s", request.resource, err)
        raise DecodeError(f"failed to decode {model.__name__}: {err}")
