import logging

from exc import InstanceNotConfiguredError
from resources import (
    ConfigMapVolumeSource,
    Container,
    PodSpec,
    SecretVolumeSource,
    Volume,
    VolumeMount,
)

LOG = logging.getLogger(__name__)

SIDECAR_NAME = "cloud-sql-proxy"
DEFAULT_IMAGE = "gcr.io/cloudsql-docker/gce-proxy:1.33.1"

SCRATCH_VOLUME = "cloudsql"
CREDENTIALS_VOLUME = "sql-service-token-account"
CA_CERTS_VOLUME = "sql-ca-certificates"
RESERVED_VOLUMES = frozenset({SCRATCH_VOLUME, CREDENTIALS_VOLUME, CA_CERTS_VOLUME})

CREDENTIALS_PATH = "/credentials"
CREDENTIALS_FILE = CREDENTIALS_PATH + "/credentials.json"
CA_CERTS_PATH = "/etc/ssl/certs"

PROXY_COMMAND = ("/cloud_sql_proxy", "-dir=/cloudsql")
INSTANCE_FLAG = "-instances={instance}=tcp:127.0.0.1:3306"

# Templates shared by all requests. They are only ever deep-copied, never
# modified.
SIDECAR_TEMPLATE = Container(
    name=SIDECAR_NAME,
    image=DEFAULT_IMAGE,
    command=list(PROXY_COMMAND),
    volumeMounts=[VolumeMount(name=SCRATCH_VOLUME, mountPath="/cloudsql")],
)

SCRATCH_VOLUME_TEMPLATE = Volume(name=SCRATCH_VOLUME, emptyDir={})

CREDENTIALS_MOUNT_TEMPLATE = VolumeMount(
    name=CREDENTIALS_VOLUME, mountPath=CREDENTIALS_PATH
)
CREDENTIALS_VOLUME_TEMPLATE = Volume(
    name=CREDENTIALS_VOLUME,
    secret=SecretVolumeSource(secretName="cloud-sql-proxy-credentials"),
)

CA_CERTS_MOUNT_TEMPLATE = VolumeMount(name=CA_CERTS_VOLUME, mountPath=CA_CERTS_PATH)
CA_CERTS_VOLUME_TEMPLATE = Volume(
    name=CA_CERTS_VOLUME,
    configMap=ConfigMapVolumeSource(name="ca-certificates"),
)


def build_sidecar(
    instance: str,
    image: str = DEFAULT_IMAGE,
    secret_name: str | None = None,
    ca_map_name: str | None = None,
    cpu_request: str | None = None,
    mem_request: str | None = None,
) -> tuple[Container, list[Volume]]:
    """Build the proxy container and the volumes it needs.

    The container always mounts the scratch volume. A credentials secret and a
    CA config map are mounted only when their names are given. The instance
    flag is always the last command argument.
    """
    if not instance:
        raise InstanceNotConfiguredError("no Cloud SQL instance configured")

    container = SIDECAR_TEMPLATE.model_copy(deep=True)
    container.image = image
    volumes = [SCRATCH_VOLUME_TEMPLATE.model_copy(deep=True)]
    command = list(PROXY_COMMAND)
    mounts = list(container.volumeMounts)

    if secret_name:
        mounts.append(CREDENTIALS_MOUNT_TEMPLATE.model_copy(deep=True))
        volume = CREDENTIALS_VOLUME_TEMPLATE.model_copy(deep=True)
        volume.secret.secretName = secret_name
        volumes.append(volume)
        command.append(f"-credential_file={CREDENTIALS_FILE}")

    if ca_map_name:
        mounts.append(CA_CERTS_MOUNT_TEMPLATE.model_copy(deep=True))
        volume = CA_CERTS_VOLUME_TEMPLATE.model_copy(deep=True)
        volume.configMap.name = ca_map_name
        volumes.append(volume)

    requests = {}
    if cpu_request:
        requests["cpu"] = cpu_request
    if mem_request:
        requests["memory"] = mem_request
    if requests:
        container.resources = {"requests": requests}

    command.append(INSTANCE_FLAG.format(instance=instance))
    container.command = command
    container.volumeMounts = mounts

    return container, volumes


def is_sidecar(container: Container, sidecar: Container) -> bool:
    return container.name == sidecar.name or (
        container.image is not None and container.image == sidecar.image
    )


def inject_sidecar(
    pod_spec: PodSpec, sidecar: Container, volumes: list[Volume]
) -> PodSpec:
    """Add the sidecar and its volumes to `pod_spec`, in place.

    Any existing sidecar (same name or image) and any volume using one of the
    reserved names is dropped first, so injecting twice gives the same result
    as injecting once. The sidecar and its volumes always end up last.
    """
    containers = [c for c in pod_spec.containers if not is_sidecar(c, sidecar)]
    if len(containers) != len(pod_spec.containers):
        LOG.info("replacing existing %s container", sidecar.name)
    containers.append(sidecar)
    pod_spec.containers = containers

    kept_volumes = [v for v in pod_spec.volumes or [] if v.name not in RESERVED_VOLUMES]
    kept_volumes.extend(volumes)
    pod_spec.volumes = kept_volumes

    return pod_spec
