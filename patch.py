import json
import logging
from collections.abc import Mapping

import jsonpatch
from pydantic_core import PydanticSerializationError

from exc import PatchError, SerializationError

LOG = logging.getLogger(__name__)

# Paths owned by the API server. Patching them is either pointless or rejected.
IGNORED_PATCH_PATHS = {
    "/status": "populated by the API server",
    "/metadata/creationTimestamp": "set by the API server on creation",
    "/spec/template/metadata/creationTimestamp": "set by the API server on creation",
}


def is_ignored(path: str, ignored=IGNORED_PATCH_PATHS) -> bool:
    return any(path == p or path.startswith(p + "/") for p in ignored)


def load_original(original) -> dict:
    if isinstance(original, Mapping):
        return dict(original)

    try:
        doc = json.loads(original)
    except (TypeError, ValueError) as err:
        raise PatchError(f"original object is not valid JSON: {err}")

    if not isinstance(doc, dict):
        raise PatchError("original object is not a JSON object")

    return doc


def create_patch(original, mutated, ignored=IGNORED_PATCH_PATHS) -> bytes | None:
    """Compute the JSON Patch turning `original` into `mutated`.

    `original` is the object as received (JSON bytes, str, or the decoded
    mapping) and `mutated` the typed model it was decoded into. Operations on
    ignored paths are dropped. Returns None if nothing is left to patch.
    """
    try:
        mutated_doc = mutated.encode()
    except PydanticSerializationError as err:
        raise SerializationError(f"failed to encode mutated object: {err}")

    original_doc = load_original(original)

    try:
        patch = jsonpatch.make_patch(original_doc, mutated_doc)
    except jsonpatch.JsonPatchException as err:
        raise PatchError(f"failed to compute patch: {err}")

    operations = []
    for operation in patch:
        if is_ignored(operation["path"], ignored):
            LOG.debug("dropping patch operation on %s", operation["path"])
            continue
        operations.append(operation)

    if not operations:
        return None

    return json.dumps(operations).encode()
