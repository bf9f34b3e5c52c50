"""Deterministic resource naming.

Every cloud resource owned by a sandbox is named from its slug, and every
resource owned by a release is named from its (app, environment) prefix.
Nothing here consults provider state, so names can always be recomputed.
"""

import re
import secrets

PREFIX = 'stackrun-sandbox'
DEFAULT_USER = 'deploy'
SLUG_LENGTH = 6
VOLUME_MOUNT_BASE = '/mnt/data'

_SLUG_RE = re.compile(r'^[a-f0-9]{6}$')


def generate_slug() -> str:
    """Return a new random 6-character lowercase hex slug."""
    return secrets.token_hex(SLUG_LENGTH // 2)


def valid_slug(slug) -> bool:
    return isinstance(slug, str) and bool(_SLUG_RE.match(slug))


def validate_slug(slug) -> None:
    """Raise ValueError unless slug is a 6-character lowercase hex string."""
    if not valid_slug(slug):
        raise ValueError(f"Invalid slug format: {slug!r}")


def resource(slug: str) -> str:
    validate_slug(slug)
    return f"{PREFIX}-{slug}"


def container(slug: str, role: str) -> str:
    validate_slug(slug)
    return f"{PREFIX}-{slug}-{role}"


def branch(slug: str) -> str:
    validate_slug(slug)
    return f"{PREFIX}/{slug}"


def hostname(slug: str, domain: str) -> str:
    validate_slug(slug)
    return f"{PREFIX}-{slug}.{domain}"


def worker(slug: str) -> str:
    validate_slug(slug)
    return f"{PREFIX}-widget-{slug}"


def worker_route(slug: str, domain: str) -> str:
    return f"{hostname(slug, domain)}/*"


def release_prefix(app_name: str, environment: str) -> str:
    """Reconciliation prefix shared by every resource of one release."""
    return f"{app_name}-{environment}"


def resource_regex() -> re.Pattern:
    """Pattern matching any sandbox resource name, capturing the slug."""
    return re.compile(rf'^{re.escape(PREFIX)}-([a-f0-9]{{6}})')


def volume(prefix: str, db_type: str) -> str:
    """Block volume (and host mount directory) name for a release database."""
    return f"{prefix}-{db_type}"
