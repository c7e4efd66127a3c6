import base64
import json

import jsonpatch
import pytest

import mutate
from conftest import DEFAULT_INSTANCE, make_request
from models import GroupVersionResource
from mutate import MutationOptions
from patch import is_ignored
from sidecar import DEFAULT_IMAGE, RESERVED_VOLUMES, SIDECAR_NAME


def decode_patch(response):
    return json.loads(base64.b64decode(response.patch))


def by_path(ops):
    return sorted(ops, key=lambda op: op["path"])


def sidecar_of(doc, pod_spec_path=("spec",)):
    spec = doc
    for key in pod_spec_path:
        spec = spec[key]
    return [c for c in spec["containers"] if c["name"] == SIDECAR_NAME]


def test_inject_into_pod(pod, options):
    """A pod asking for injection gets exactly one new container and one new
    scratch volume; the existing container is left alone."""
    res = mutate.mutate(options, make_request(pod))

    assert res.allowed
    assert res.patchType == "JSONPatch"
    assert by_path(decode_patch(res)) == [
        {
            "op": "add",
            "path": "/spec/containers/1",
            "value": {
                "name": SIDECAR_NAME,
                "image": DEFAULT_IMAGE,
                "command": [
                    "/cloud_sql_proxy",
                    "-dir=/cloudsql",
                    f"-instances={DEFAULT_INSTANCE}=tcp:127.0.0.1:3306",
                ],
                "volumeMounts": [{"name": "cloudsql", "mountPath": "/cloudsql"}],
            },
        },
        {
            "op": "add",
            "path": "/spec/volumes/1",
            "value": {"name": "cloudsql", "emptyDir": {}},
        },
    ]


def test_reinject_with_new_instance(pod, options):
    """Re-submitting an injected pod with a different instance only replaces
    the instance argument of the sidecar."""
    res = mutate.mutate(options, make_request(pod))
    injected = jsonpatch.apply_patch(pod, decode_patch(res))
    annotations = injected["metadata"]["annotations"]
    annotations["sqlbee.connctd.io.instance"] = "other:region:db"

    res = mutate.mutate(options, make_request(injected))

    assert res.allowed
    assert decode_patch(res) == [
        {
            "op": "replace",
            "path": "/spec/containers/1/command/2",
            "value": "-instances=other:region:db=tcp:127.0.0.1:3306",
        }
    ]


def test_reinject_unchanged(pod, options):
    res = mutate.mutate(options, make_request(pod))
    injected = jsonpatch.apply_patch(pod, decode_patch(res))

    res = mutate.mutate(options, make_request(injected))

    assert res.allowed
    assert res.patch is None
    assert res.patchType is None


def test_inject_into_deployment(deployment, deployment_resource, options):
    res = mutate.mutate(options, make_request(deployment, deployment_resource))

    assert res.allowed
    patched = jsonpatch.apply_patch(deployment, decode_patch(res))
    pod_spec = patched["spec"]["template"]["spec"]
    assert [c["name"] for c in pod_spec["containers"]] == ["wordpress", SIDECAR_NAME]
    assert [v["name"] for v in pod_spec["volumes"]] == [
        "wordpress-persistent-storage",
        "cloudsql",
    ]
    assert patched["spec"]["replicas"] == 2


def test_inject_legacy_deployment(deployment, options):
    resource = GroupVersionResource(
        group="extensions", version="v1beta1", resource="deployments"
    )
    res = mutate.mutate(options, make_request(deployment, resource))

    assert res.allowed
    assert res.patch is not None


def test_unversioned_resource(pod, options):
    res = mutate.mutate(
        options, make_request(pod, GroupVersionResource(resource="pods"))
    )

    assert res.allowed
    assert res.patch is not None


def test_wrong_resource_type(pod, options):
    resource = GroupVersionResource(group="", version="v1", resource="services")
    res = mutate.mutate(options, make_request(pod, resource))

    assert not res.allowed
    assert res.status.message == "Wrong resource type"
    assert res.patch is None


def test_missing_object(options):
    res = mutate.mutate(options, make_request(None))

    assert not res.allowed
    assert "does not contain an object" in res.status.message


def test_decode_failure(pod, options):
    pod["spec"]["containers"] = "not a list"
    res = mutate.mutate(options, make_request(pod))

    assert not res.allowed
    assert "failed to decode Pod" in res.status.message


@pytest.mark.parametrize("namespace", ["kube-system", "kube-public"])
def test_excluded_namespace(pod, options, namespace):
    res = mutate.mutate(options, make_request(pod, namespace=namespace))

    assert res.allowed
    assert res.patch is None


@pytest.mark.parametrize(
    "require_annotation,inject,mutated",
    [
        (True, None, False),
        (True, "true", True),
        (True, "false", False),
        (True, "yes", False),
        (False, None, True),
        (False, "true", True),
        (False, "false", False),
        (False, "no", True),
    ],
)
def test_annotation_gate(pod, require_annotation, inject, mutated):
    options = MutationOptions(
        default_instance=DEFAULT_INSTANCE, require_annotation=require_annotation
    )
    annotations = pod["metadata"]["annotations"]
    del annotations["sqlbee.connctd.io.inject"]
    if inject is not None:
        annotations["sqlbee.connctd.io.inject"] = inject

    res = mutate.mutate(options, make_request(pod))

    assert res.allowed
    assert (res.patch is not None) == mutated


def test_no_instance(pod):
    res = mutate.mutate(MutationOptions(), make_request(pod))

    assert not res.allowed
    assert "sqlbee.connctd.io.instance" in res.status.message
    assert res.patch is None


def test_instance_from_annotation(pod):
    pod["metadata"]["annotations"]["sqlbee.connctd.io.instance"] = "a:b:c"
    res = mutate.mutate(MutationOptions(), make_request(pod))

    assert res.allowed
    (sidecar,) = sidecar_of(jsonpatch.apply_patch(pod, decode_patch(res)))
    assert sidecar["command"][-1] == "-instances=a:b:c=tcp:127.0.0.1:3306"


def test_annotations_override_defaults(pod):
    options = MutationOptions(
        default_instance=DEFAULT_INSTANCE,
        default_secret_name="default-secret",
        default_ca_map="default-ca",
        default_image="example.com/proxy:1",
    )
    pod["metadata"]["annotations"].update(
        {
            "sqlbee.connctd.io.image": "example.com/proxy:2",
            "sqlbee.connctd.io.instance": "x:y:z",
            "sqlbee.connctd.io.secret": "my-secret",
            "sqlbee.connctd.io.caMap": "my-ca",
        }
    )

    res = mutate.mutate(options, make_request(pod))
    patched = jsonpatch.apply_patch(pod, decode_patch(res))

    (sidecar,) = sidecar_of(patched)
    assert sidecar["image"] == "example.com/proxy:2"
    assert sidecar["command"][-1] == "-instances=x:y:z=tcp:127.0.0.1:3306"
    volumes = {v["name"]: v for v in patched["spec"]["volumes"]}
    assert volumes["sql-service-token-account"]["secret"] == {"secretName": "my-secret"}
    assert volumes["sql-ca-certificates"]["configMap"] == {"name": "my-ca"}


def test_defaults_apply_without_annotations(pod):
    options = MutationOptions(
        default_instance=DEFAULT_INSTANCE,
        default_secret_name="default-secret",
        default_ca_map="default-ca",
        cpu_request="10m",
        mem_request="16Mi",
    )

    res = mutate.mutate(options, make_request(pod))
    patched = jsonpatch.apply_patch(pod, decode_patch(res))

    (sidecar,) = sidecar_of(patched)
    assert sidecar["image"] == DEFAULT_IMAGE
    assert "-credential_file=/credentials/credentials.json" in sidecar["command"]
    assert sidecar["resources"] == {"requests": {"cpu": "10m", "memory": "16Mi"}}
    volumes = {v["name"]: v for v in patched["spec"]["volumes"]}
    assert volumes["sql-service-token-account"]["secret"] == {
        "secretName": "default-secret"
    }
    assert volumes["sql-ca-certificates"]["configMap"] == {"name": "default-ca"}


def test_patch_never_touches_ignored_paths(pod, options):
    pod["metadata"]["creationTimestamp"] = None
    pod["status"] = {}
    res = mutate.mutate(options, make_request(pod))

    ops = decode_patch(res)
    assert ops
    assert not any(is_ignored(op["path"]) for op in ops)


def test_existing_sidecar_and_volumes_replaced(pod, options):
    pod["spec"]["containers"].insert(
        0, {"name": SIDECAR_NAME, "image": "old/proxy:0.1", "command": ["old"]}
    )
    pod["spec"]["volumes"].extend(
        [
            {"name": "cloudsql", "hostPath": {"path": "/tmp"}},
            {"name": "sql-ca-certificates", "configMap": {"name": "stale"}},
        ]
    )

    res = mutate.mutate(options, make_request(pod))
    patched = jsonpatch.apply_patch(pod, decode_patch(res))

    names = [c["name"] for c in patched["spec"]["containers"]]
    assert names == ["wordpress", SIDECAR_NAME]
    volumes = [v["name"] for v in patched["spec"]["volumes"]]
    assert volumes == ["wordpress-persistent-storage", "cloudsql"]
    assert not RESERVED_VOLUMES.intersection(volumes[:-1])


def test_make_mutator(pod, options):
    mutator = mutate.make_mutator(options)
    res = mutator(make_request(pod))

    assert res.allowed
    assert res.patch is not None


def test_options_from_config():
    options = MutationOptions.from_config(
        {
            "DEFAULT_INSTANCE": "a:b:c",
            "DEFAULT_SECRET_NAME": 42,
            "REQUIRE_ANNOTATION": True,
            "CPU_REQUEST": "30m",
        }
    )

    assert options.default_instance == "a:b:c"
    assert options.default_secret_name == "42"
    assert options.default_ca_map == ""
    assert options.default_image == DEFAULT_IMAGE
    assert options.require_annotation
    assert options.cpu_request == "30m"
    assert options.mem_request == ""
