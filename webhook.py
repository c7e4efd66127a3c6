import functools
import logging

from flask import Flask, request, jsonify, current_app
from pydantic import BaseModel, ValidationError

from exc import ApplicationError, InvalidReviewError
from models import (
    AdmissionReview,
    AdmissionResponse,
    AdmissionReviewStatus,
    to_admission_response,
)
from mutate import MutationOptions, make_mutator

LOG = logging.getLogger(__name__)

ENV_PREFIX = "CLOUDSQL_INJECTOR"
ADMISSION_ENDPOINTS = ("mutate_resource", "admit_resource")


class DEFAULTS:
    DEFAULT_INSTANCE = ""
    DEFAULT_SECRET_NAME = ""
    DEFAULT_CA_MAP = ""
    DEFAULT_IMAGE = ""
    REQUIRE_ANNOTATION = False
    CPU_REQUEST = "10m"
    MEM_REQUEST = "16Mi"

    CERT_FILE = "/tls/tls.crt"
    KEY_FILE = "/tls/tls.key"
    LISTEN_HOST = "0.0.0.0"
    LISTEN_PORT = 443
    HEALTH_PORT = 8080
    REQUEST_TIMEOUT = 10
    SHUTDOWN_TIMEOUT = 15
    LOG_LEVEL = "info"

    MUTATOR = make_mutator
    ADMITTER = None
    NEEDS_MUTATION = None


def jsonresponse():
    """Transforms the response from a view function into a JSON object."""

    def _outer(func):
        @functools.wraps(func)
        def _inner(*args, **kwargs):
            res = func(*args, **kwargs)
            if isinstance(res, BaseModel):
                return jsonify(res.model_dump(mode="json", exclude_none=True))
            else:
                return jsonify(res)

        return _inner

    return _outer


def request_uid(body):
    try:
        return body["request"]["uid"] or None
    except (KeyError, TypeError):
        return None


def read_review() -> AdmissionReview:
    """Decode the AdmissionReview carried by the current request."""
    body = request.get_data(cache=True)
    if not body:
        raise InvalidReviewError("Request body is empty")

    LOG.debug(
        "received request body from %s (%d bytes): %s",
        request.remote_addr,
        len(body),
        body,
    )

    data = request.get_json(silent=True)
    if data is None:
        raise InvalidReviewError("Request body is not valid JSON")

    try:
        review = AdmissionReview.model_validate(data)
    except ValidationError as err:
        raise InvalidReviewError(f"Invalid request: {err}", uid=request_uid(data))

    if review.request is None:
        raise InvalidReviewError("Invalid request: missing request field")

    return review


def respond(review: AdmissionReview, response: AdmissionResponse) -> AdmissionReview:
    return AdmissionReview(
        apiVersion=review.apiVersion,
        response=response.model_copy(update={"uid": review.request.uid}),
    )


@jsonresponse()
def mutate_resource():
    review = read_review()
    req = review.request

    needs_mutation = current_app.needs_mutation
    if needs_mutation is not None and not needs_mutation(req):
        LOG.info(
            "%s %s/%s (uid %s) does not need mutation",
            req.resource,
            req.namespace,
            req.name,
            req.uid,
        )
        response = AdmissionResponse(
            allowed=True,
            status=AdmissionReviewStatus(
                message="This resource does not need mutation"
            ),
        )
    else:
        response = current_app.mutator(req)

    return respond(review, response)


@jsonresponse()
def admit_resource():
    review = read_review()
    req = review.request

    try:
        response = current_app.admitter(req)
    except ApplicationError as err:
        LOG.error(
            "admission decision failed for %s %s/%s (uid %s): %s",
            req.resource,
            req.namespace,
            req.name,
            req.uid,
            err,
        )
        raise InvalidReviewError(str(err), status=406, uid=req.uid)

    return respond(review, response)


def check_content_type():
    if request.endpoint not in ADMISSION_ENDPOINTS:
        return None

    if request.mimetype != "application/json":
        LOG.error(
            "invalid content type %r from %s", request.content_type, request.remote_addr
        )
        return (
            "invalid Content-Type, want `application/json`",
            415,
            {"content-type": "text/plain"},
        )

    return None


def handle_invalidreview(err):
    LOG.error("failed to read admission review: %s", err)
    response = to_admission_response(err)
    if err.uid:
        response = response.model_copy(update={"uid": err.uid})
    review = AdmissionReview(response=response)
    return jsonify(review.model_dump(mode="json", exclude_none=True)), err.status


def handle_applicationerror(err):
    return str(err), 500, {"content-type": "text/plain"}


def health():
    return "", 200


def create_health_app() -> Flask:
    """Plain HTTP app answering liveness and readiness probes."""
    app = Flask(__name__)
    app.add_url_rule("/health", view_func=health)
    return app


def create_app(**config) -> Flask:
    """Use an application factory [1] to create the Flask app.

    Configuration comes from DEFAULTS, then from environment variables prefixed
    with CLOUDSQL_INJECTOR_, then from keyword arguments.

    [1]: https://flask.palletsprojects.com/en/3.0.x/patterns/appfactories/
    """

    app = Flask(__name__)
    app.config.from_object(DEFAULTS)
    app.config.from_prefixed_env(ENV_PREFIX)
    if config:
        app.config.update(config)

    app.mutation_options = MutationOptions.from_config(app.config)
    app.mutator = None
    if app.config["MUTATOR"]:
        app.mutator = app.config["MUTATOR"](app.mutation_options)
    app.admitter = app.config["ADMITTER"]
    app.needs_mutation = app.config["NEEDS_MUTATION"]

    app.before_request(check_content_type)
    app.errorhandler(InvalidReviewError)(handle_invalidreview)
    app.errorhandler(ApplicationError)(handle_applicationerror)

    if app.mutator is not None:
        LOG.info("adding mutating admission endpoint /mutate")
        app.add_url_rule("/mutate", view_func=mutate_resource, methods=["POST"])

    if app.admitter is not None:
        LOG.info("adding admission endpoint /admit")
        app.add_url_rule("/admit", view_func=admit_resource, methods=["POST"])

    return app
