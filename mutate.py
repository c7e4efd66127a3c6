import functools
import logging

from pydantic import BaseModel, ValidationError

from annotations import (
    ANNOTATION_CA_MAP,
    ANNOTATION_IMAGE,
    ANNOTATION_INJECT,
    ANNOTATION_INSTANCE,
    ANNOTATION_SECRET,
    has_annotation_value,
    resolve_string,
)
from exc import ApplicationError, InstanceNotConfiguredError, SerializationError
from models import (
    AdmissionRequest,
    AdmissionResponse,
    PatchType,
    to_admission_response,
)
from patch import create_patch
from resources import Workload, decode_workload
from sidecar import DEFAULT_IMAGE, build_sidecar, inject_sidecar

LOG = logging.getLogger(__name__)

# Control plane namespaces are never mutated.
EXCLUDED_NAMESPACES = frozenset({"kube-system", "kube-public"})


class MutationOptions(BaseModel, frozen=True):
    default_instance: str = ""
    default_secret_name: str = ""
    default_ca_map: str = ""
    default_image: str = DEFAULT_IMAGE
    require_annotation: bool = False
    cpu_request: str = ""
    mem_request: str = ""

    @classmethod
    def from_config(cls, config):
        return cls(
            default_instance=str(config.get("DEFAULT_INSTANCE") or ""),
            default_secret_name=str(config.get("DEFAULT_SECRET_NAME") or ""),
            default_ca_map=str(config.get("DEFAULT_CA_MAP") or ""),
            default_image=str(config.get("DEFAULT_IMAGE") or DEFAULT_IMAGE),
            require_annotation=bool(config.get("REQUIRE_ANNOTATION")),
            cpu_request=str(config.get("CPU_REQUEST") or ""),
            mem_request=str(config.get("MEM_REQUEST") or ""),
        )


def wants_injection(workload: Workload, require_annotation: bool) -> bool:
    if require_annotation:
        return has_annotation_value(workload, ANNOTATION_INJECT, "true")
    return not has_annotation_value(workload, ANNOTATION_INJECT, "false")


def configure_sidecar(workload: Workload, options: MutationOptions):
    """Resolve annotations against the defaults and build the sidecar."""
    return build_sidecar(
        instance=resolve_string(workload, ANNOTATION_INSTANCE, options.default_instance),
        image=resolve_string(workload, ANNOTATION_IMAGE, options.default_image),
        secret_name=resolve_string(
            workload, ANNOTATION_SECRET, options.default_secret_name
        ),
        ca_map_name=resolve_string(workload, ANNOTATION_CA_MAP, options.default_ca_map),
        cpu_request=options.cpu_request,
        mem_request=options.mem_request,
    )


def mutate(options: MutationOptions, request: AdmissionRequest) -> AdmissionResponse:
    """Decide whether to inject the proxy sidecar and compute the patch.

    Errors never escape: anything going wrong for this request is turned into
    a response with allowed=False and a message explaining why.
    """
    if request.namespace in EXCLUDED_NAMESPACES:
        LOG.info(
            "not mutating %s in excluded namespace %s",
            request.resource,
            request.namespace,
        )
        return AdmissionResponse(allowed=True)

    try:
        workload = decode_workload(request)

        if not wants_injection(workload, options.require_annotation):
            LOG.info(
                "skipping %s %s/%s, injection not requested",
                request.resource,
                request.namespace,
                request.name,
            )
            return AdmissionResponse(allowed=True)

        instance = resolve_string(
            workload, ANNOTATION_INSTANCE, options.default_instance
        )
        if not instance:
            raise InstanceNotConfiguredError(
                "Instance is not specified via defaults or via annotation "
                f"{ANNOTATION_INSTANCE}"
            )

        LOG.info(
            "mutating %s %s/%s for instance %s",
            request.resource,
            request.namespace,
            request.name,
            instance,
        )
        sidecar, volumes = configure_sidecar(workload, options)
        inject_sidecar(workload.pod_spec, sidecar, volumes)
        patch = create_patch(request.object, workload)

        if patch is None:
            return AdmissionResponse(allowed=True)

        try:
            return AdmissionResponse(
                allowed=True, patchType=PatchType.JSONPatch, patch=patch
            )
        except ValidationError as err:
            raise SerializationError(f"generated an invalid patch: {err}")
    except ApplicationError as err:
        LOG.warning("rejecting %s request %s: %s", request.resource, request.uid, err)
        return to_admission_response(err)


def make_mutator(options: MutationOptions):
    return functools.partial(mutate, options)
