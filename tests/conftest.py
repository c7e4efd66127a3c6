import copy

import pytest

import webhook
from models import AdmissionRequest, GroupVersionResource
from mutate import MutationOptions
from resources import DEPLOYMENT_RESOURCE, POD_RESOURCE

DEFAULT_INSTANCE = "proj:region:instance"

POD = {
    "apiVersion": "v1",
    "kind": "Pod",
    "metadata": {
        "name": "wordpress",
        "labels": {"app": "wordpress"},
        "annotations": {"sqlbee.connctd.io.inject": "true"},
    },
    "spec": {
        "containers": [
            {
                "image": "wordpress:4.8-apache",
                "name": "wordpress",
                "env": [
                    {"name": "WORDPRESS_DB_HOST", "value": "127.0.0.1"},
                    {
                        "name": "WORDPRESS_DB_PASSWORD",
                        "valueFrom": {
                            "secretKeyRef": {"name": "mysql-pass", "key": "password"}
                        },
                    },
                ],
                "ports": [{"containerPort": 80, "name": "wordpress"}],
                "volumeMounts": [
                    {"name": "wordpress-persistent-storage", "mountPath": "/var/www/html"}
                ],
            }
        ],
        "volumes": [
            {
                "name": "wordpress-persistent-storage",
                "persistentVolumeClaim": {"claimName": "wp-pv-claim"},
            }
        ],
    },
}

DEPLOYMENT = {
    "apiVersion": "apps/v1",
    "kind": "Deployment",
    "metadata": {
        "name": "wordpress",
        "annotations": {"sqlbee.connctd.io.inject": "true"},
    },
    "spec": {
        "replicas": 2,
        "selector": {"matchLabels": {"app": "wordpress"}},
        "template": {
            "metadata": {"labels": {"app": "wordpress"}},
            "spec": copy.deepcopy(POD["spec"]),
        },
    },
}


def make_request(
    obj,
    resource: GroupVersionResource = POD_RESOURCE,
    namespace="default",
    uid="1234",
) -> AdmissionRequest:
    return AdmissionRequest(
        uid=uid,
        resource=resource,
        namespace=namespace,
        name=(obj or {}).get("metadata", {}).get("name"),
        object=obj,
    )


def make_review(obj, resource: GroupVersionResource = POD_RESOURCE, **kwargs):
    return {
        "apiVersion": "admission.k8s.io/v1",
        "kind": "AdmissionReview",
        "request": make_request(obj, resource, **kwargs).model_dump(mode="json"),
    }


@pytest.fixture()
def pod():
    return copy.deepcopy(POD)


@pytest.fixture()
def deployment():
    return copy.deepcopy(DEPLOYMENT)


@pytest.fixture()
def deployment_resource():
    return DEPLOYMENT_RESOURCE


@pytest.fixture()
def options():
    return MutationOptions(default_instance=DEFAULT_INSTANCE)


@pytest.fixture()
def app():
    app = webhook.create_app(
        DEFAULT_INSTANCE=DEFAULT_INSTANCE,
        CPU_REQUEST="",
        MEM_REQUEST="",
        TESTING=True,
    )
    yield app


@pytest.fixture()
def client(app):
    return app.test_client()
