ANNOTATION_PREFIX = "sqlbee.connctd.io."
ANNOTATION_INJECT = ANNOTATION_PREFIX + "inject"
ANNOTATION_IMAGE = ANNOTATION_PREFIX + "image"
ANNOTATION_INSTANCE = ANNOTATION_PREFIX + "instance"
ANNOTATION_SECRET = ANNOTATION_PREFIX + "secret"
ANNOTATION_CA_MAP = ANNOTATION_PREFIX + "caMap"


def resolve_string(resource, key: str, default: str = "") -> str:
    """Return the value of annotation `key`, or `default` if it is not set."""
    annotations = resource.annotations or {}
    if key in annotations:
        return annotations[key]
    return default


def has_annotation_value(resource, key: str, expected: str) -> bool:
    annotations = resource.annotations or {}
    return key in annotations and annotations[key] == expected
