"""TLS identity of the webhook listener, reloaded when the certificate changes.

The listener is created with a single SSLContext whose SNI callback points
every incoming handshake at whichever context the CertificateStore currently
holds. Rotating the certificate only swaps that reference, so a handshake sees
either the old or the new key pair and the listener never restarts.
"""

import logging
import os
import ssl
import threading

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from exc import CertificateError

LOG = logging.getLogger(__name__)


class CertificateStore:
    def __init__(self, cert_file: str, key_file: str):
        self.cert_file = cert_file
        self.key_file = key_file
        self._lock = threading.Lock()
        self._context = self._load()

    def _load(self) -> ssl.SSLContext:
        context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        try:
            context.load_cert_chain(self.cert_file, self.key_file)
        except (OSError, ssl.SSLError) as err:
            LOG.error(
                "failed to load key pair (cert=%s, key=%s): %s",
                self.cert_file,
                self.key_file,
                err,
            )
            raise CertificateError(f"failed to load key pair: {err}")
        return context

    @property
    def context(self) -> ssl.SSLContext:
        with self._lock:
            return self._context

    def reload(self):
        """Load the key pair from disk and make it the active one.

        The new pair is fully loaded before the swap; on failure the active
        context is left untouched and CertificateError is raised.
        """
        context = self._load()
        with self._lock:
            self._context = context
        LOG.info("reloaded key pair from %s", self.cert_file)

    def _select_context(self, ssl_sock, server_name, initial_context):
        ssl_sock.context = self.context

    def server_context(self) -> ssl.SSLContext:
        context = self._load()
        context.sni_callback = self._select_context
        return context


class CertificateEventHandler(FileSystemEventHandler):
    """Reload the store when the certificate changes.

    Besides direct writes to the certificate, this catches Secret and
    ConfigMap volume updates: the kubelet swaps the ``..data`` symlink the
    certificate resolves through and never touches the certificate path itself.
    """

    def __init__(self, store: CertificateStore, on_failure):
        super().__init__()
        self.store = store
        self.on_failure = on_failure
        self.path = os.path.abspath(store.cert_file)
        self.target = os.path.realpath(self.path)

    def _retargeted(self) -> bool:
        target = os.path.realpath(self.path)
        if target == self.target:
            return False
        LOG.debug("certificate %s now resolves to %s", self.path, target)
        self.target = target
        return True

    def _matches(self, event) -> bool:
        if event.is_directory:
            return False
        paths = [event.src_path, getattr(event, "dest_path", "")]
        return any(p and os.path.abspath(p) == self.path for p in paths)

    def _reload(self, event):
        if not (self._retargeted() or self._matches(event)):
            return

        LOG.info("certificate %s changed, reloading key pair", self.path)
        try:
            self.store.reload()
        except CertificateError as err:
            self.on_failure(err)

    on_created = _reload
    on_modified = _reload
    on_moved = _reload


class CertificateWatcher:
    """Watch the certificate file and reload the store whenever it changes.

    `on_failure` is called with the error if a reload fails. Serving with a
    stale or broken identity is not an option, so the server passes a
    callback that terminates the process.
    """

    def __init__(self, store: CertificateStore, on_failure):
        self.store = store
        self.handler = CertificateEventHandler(store, on_failure)
        self.observer = Observer()

    def start(self):
        directory = os.path.dirname(self.handler.path)
        self.observer.schedule(self.handler, directory, recursive=False)
        self.observer.daemon = True
        self.observer.start()
        LOG.info("watching %s for changes", self.handler.path)

    def stop(self):
        self.observer.stop()
        self.observer.join()
