import logging
import os
import resource
import sys
import threading

import pydantic
from flask import Flask, request, current_app
from pydantic_core import PydanticSerializationError

from models import (
    AdmissionReview,
    AdmissionResponse,
    AdmissionReviewStatus,
    PatchType,
    Pod,
    ResourceTotals,
)

from policies import Policy, load_policy
from exc import (
    ApplicationError,
    ConfigurationError,
    EncodingFailure,
    MalformedRequest,
    RequestError,
    UnsupportedKind,
)

LOG = logging.getLogger(__name__)
logging.basicConfig(level=logging.INFO)

LOG_FORMAT = "%(asctime)s.%(msecs)03d %(filename)s:%(lineno)d %(levelname)s %(message)s"

TRACKED_RESOURCES = ("cpu", "memory")


class DEFAULTS:
    POLICY = "allow"
    MAX_CPU = None
    MAX_MEMORY = None
    LOG_FILE = "./admission.log"
    BIND_ADDRESS = "0.0.0.0"
    PORT = 8080
    TLS_CERT_FILE = None
    TLS_KEY_FILE = None
    ADMISSION_LOG = None


def aggregate_requests(pod: Pod, log: logging.Logger = LOG) -> ResourceTotals:
    """Sum the cpu and memory requests of every container in the pod.

    Containers that do not request a resource are skipped rather than counted
    as zero.
    """

    totals = ResourceTotals()
    for container in pod.spec.containers:
        for name in TRACKED_RESOURCES:
            quantity = container.resources.requests.get(name)
            if quantity is None:
                continue

            log.info("container %s requests %s of %s", container.name, quantity, name)
            setattr(totals, name, getattr(totals, name) + quantity)

    log.info("total memory requested: %s", totals.memory)
    log.info("total cpu requested: %s", totals.cpu)
    return totals


def review_pod(
    review: AdmissionReview, policy: Policy, log: logging.Logger = LOG
) -> AdmissionReview:
    if review.request is None:
        raise MalformedRequest("admission review does not contain a request")

    req = review.request

    # Make sure the incoming request is for a Pod
    if req.kind.kind != "Pod":
        raise UnsupportedKind(f"expected request for kind Pod but got {req.kind.kind}")

    try:
        pod = Pod.model_validate(req.object)
    except pydantic.ValidationError as err:
        raise MalformedRequest(f"invalid pod object: {err}") from err

    log.info(
        "reviewing %s of %s %s/%s (uid %s)",
        req.operation,
        req.kind.kind,
        req.namespace or pod.metadata.namespace,
        req.name or pod.metadata.name,
        req.uid,
    )

    totals = aggregate_requests(pod, log)
    decision = policy.decide(totals, pod.spec)
    log.info("uid %s allowed: %s", req.uid, decision.allowed)

    response = AdmissionResponse(
        uid=req.uid,
        allowed=decision.allowed,
        status=(
            AdmissionReviewStatus(message=decision.message)
            if decision.message
            else None
        ),
        patchType=PatchType.JSONPatch if decision.patch else None,
        patch=decision.patch,
    )

    # Answer in the same API version the API server asked in.
    return AdmissionReview(apiVersion=review.apiVersion, response=response)


def handle_admission_request(
    body: bytes | str, policy: Policy, log: logging.Logger = LOG
) -> str:
    """Turn a raw AdmissionReview request body into a raw response body."""

    try:
        review = AdmissionReview.model_validate_json(body)
    except pydantic.ValidationError as err:
        raise MalformedRequest(f"invalid admission review: {err}") from err

    res = review_pod(review, policy, log)

    try:
        return res.model_dump_json(exclude_none=True)
    except PydanticSerializationError as err:
        log.error("could not encode response: %s", err)
        raise EncodingFailure("could not encode response") from err


def validate_pod():
    if not request.is_json:
        return (
            "expected content-type application/json",
            415,
            {"content-type": "text/plain"},
        )

    body = handle_admission_request(
        request.get_data(), current_app.policy, current_app.admission_log
    )
    return body, 200, {"content-type": "application/json"}


def handle_requesterror(err):
    LOG.error("unable to complete request: %s", err)
    return str(err), 400, {"content-type": "text/plain"}


def handle_applicationerror(err):
    LOG.error("unexpected error: %s", err)
    return str(err), 500, {"content-type": "text/plain"}


def health():
    return "OK", 200, {"content-type": "text/plain"}


def create_app(**config) -> Flask:
    """Use an application factory [1] to create the Flask app.

    This makes it much easier to write tests for the application, since we can
    set up the test environment before instantiating the app. This is difficult
    to do if the app is created at `import` time.

    [1]: https://flask.palletsprojects.com/en/3.0.x/patterns/appfactories/
    """

    app = Flask(__name__)
    app.config.from_object(DEFAULTS)
    app.config.from_prefixed_env("PODWATCH")
    if config:
        app.config.update(config)

    policy = app.config["POLICY"]
    if isinstance(policy, str):
        try:
            policy = load_policy(policy, app.config)
        except ConfigurationError as err:
            LOG.error("invalid policy configuration: %s", err)
            exit(1)

    app.policy = policy
    admission_log = app.config["ADMISSION_LOG"] or LOG
    if isinstance(admission_log, str):
        admission_log = logging.getLogger(admission_log)
    app.admission_log = admission_log

    app.errorhandler(RequestError)(handle_requesterror)
    app.errorhandler(ApplicationError)(handle_applicationerror)
    app.add_url_rule("/healthz", view_func=health)
    app.add_url_rule("/validate", view_func=validate_pod, methods=["POST"])

    return app


def open_log_file(path: str) -> logging.Handler:
    handler = logging.FileHandler(path, mode="a", encoding="utf-8")
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%Y/%m/%d %H:%M:%S"))
    return handler


def log_host_stats():
    LOG.info("number of CPUs: %s", os.cpu_count())
    LOG.info("number of threads: %d", threading.active_count())
    LOG.info(
        "peak resident memory: %d KiB", resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
    )


def main():
    app = create_app()

    # We must not accept traffic without somewhere to write diagnostics.
    try:
        handler = open_log_file(app.config["LOG_FILE"])
    except OSError as err:
        LOG.error("unable to open log file %s: %s", app.config["LOG_FILE"], err)
        sys.exit(1)

    root = logging.getLogger()
    root.addHandler(handler)
    try:
        LOG.info("log file %s opened", app.config["LOG_FILE"])
        log_host_stats()

        ssl_context = None
        if app.config["TLS_CERT_FILE"] and app.config["TLS_KEY_FILE"]:
            ssl_context = (app.config["TLS_CERT_FILE"], app.config["TLS_KEY_FILE"])
            LOG.info("TLS enabled")
        else:
            LOG.warning("TLS is not configured; serving plain HTTP")

        LOG.info(
            "starting admission webhook on %s:%s",
            app.config["BIND_ADDRESS"],
            app.config["PORT"],
        )
        app.run(
            host=app.config["BIND_ADDRESS"],
            port=int(app.config["PORT"]),
            ssl_context=ssl_context,
        )
    finally:
        root.removeHandler(handler)
        handler.close()


if __name__ == "__main__":
    main()
