import logging
import os
import signal
import sys
import threading
import time

from werkzeug.serving import WSGIRequestHandler, make_server

from certs import CertificateStore, CertificateWatcher
from exc import CertificateError
from webhook import create_app, create_health_app

LOG = logging.getLogger(__name__)
logging.basicConfig(level=logging.INFO)


def configure_logging(level):
    value = logging.getLevelName(str(level).upper())
    if not isinstance(value, int):
        LOG.warning("invalid log level %r, falling back to info", level)
        value = logging.INFO
    logging.getLogger().setLevel(value)


def request_handler(timeout):
    """Request handler class applying `timeout` to every connection socket."""
    return type("RequestHandler", (WSGIRequestHandler,), {"timeout": timeout})


class InjectServer:
    """HTTPS admission listener plus the plain HTTP health listener.

    Both are threaded werkzeug servers, so every connection is served by its
    own thread. The TLS context of the admission listener comes from the
    CertificateStore and follows certificate rotation.
    """

    def __init__(self, app, store: CertificateStore, health_app=None):
        config = app.config
        handler = request_handler(config["REQUEST_TIMEOUT"])
        health_app = health_app or create_health_app()

        self.shutdown_timeout = config["SHUTDOWN_TIMEOUT"]
        self.servers = [
            make_server(
                config["LISTEN_HOST"],
                config["LISTEN_PORT"],
                app,
                threaded=True,
                request_handler=handler,
                ssl_context=store.server_context(),
            ),
            make_server(
                config["LISTEN_HOST"],
                config["HEALTH_PORT"],
                health_app,
                threaded=True,
                request_handler=handler,
            ),
        ]

        # Keep track of request threads so shutdown can wait for them.
        for server in self.servers:
            server.daemon_threads = False

    def start(self):
        for server in self.servers:
            thread = threading.Thread(target=server.serve_forever, daemon=True)
            thread.start()
            LOG.info("listening on %s:%s", server.host, server.port)

    def _stop(self, server):
        server.shutdown()
        server.server_close()

    def close(self):
        """Stop both listeners, waiting at most shutdown_timeout seconds."""
        LOG.info("shutting down listeners (timeout %ss)", self.shutdown_timeout)
        stoppers = [
            threading.Thread(target=self._stop, args=(server,), daemon=True)
            for server in self.servers
        ]
        for thread in stoppers:
            thread.start()

        deadline = time.monotonic() + self.shutdown_timeout
        for thread in stoppers:
            thread.join(max(0, deadline - time.monotonic()))

        if any(thread.is_alive() for thread in stoppers):
            LOG.warning("listeners did not stop within %ss", self.shutdown_timeout)


def reload_failed(err):
    LOG.critical("failed to reload key pair, terminating: %s", err)
    os._exit(1)


def main():
    app = create_app()
    config = app.config
    configure_logging(config["LOG_LEVEL"])

    LOG.info(
        "starting cloudsql-injector (instance=%r, require_annotation=%s)",
        app.mutation_options.default_instance,
        app.mutation_options.require_annotation,
    )

    try:
        store = CertificateStore(config["CERT_FILE"], config["KEY_FILE"])
        server = InjectServer(app, store)
    except CertificateError as err:
        LOG.error("cannot serve without a TLS identity: %s", err)
        sys.exit(1)

    watcher = CertificateWatcher(store, on_failure=reload_failed)
    watcher.start()
    server.start()

    stop = threading.Event()

    def handle_signal(signum, frame):
        LOG.info("received %s", signal.Signals(signum).name)
        stop.set()

    signal.signal(signal.SIGTERM, handle_signal)
    signal.signal(signal.SIGINT, handle_signal)

    stop.wait()
    watcher.stop()
    server.close()
    sys.exit(0)


if __name__ == "__main__":
    main()
