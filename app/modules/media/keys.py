"""Object key layout and public URL derivation.

    {namespace}/{ownerOrScopeId}/{randomId}.{ext}

    submissions/{userId}/...       submission images
    profiles/{userId}/...          profile images
    progressions/{submissionId}/.. work-in-progress images of a submission
    references/{submissionId}/...  reference images of a submission
    {userId}/...                   legacy flat layout, only ever purged

The public URL of an object is always ``{PUBLIC_BASE_URL}/{key}``; it is derived,
never stored, so the two cannot drift apart.
"""

import uuid
from enum import Enum

from app.core.config import settings


class MediaRole(str, Enum):
    SUBMISSION_IMAGE = "submission"
    PROFILE_IMAGE = "profile"


class UploadKind(str, Enum):
    SUBMISSION = "submission"
    PROFILE = "profile"
    PROGRESSION = "progression"
    REFERENCE = "reference"


NAMESPACES = {
    UploadKind.SUBMISSION: "submissions",
    UploadKind.PROFILE: "profiles",
    UploadKind.PROGRESSION: "progressions",
    UploadKind.REFERENCE: "references",
}

# kinds whose keys live under a submission rather than under the user
SUBMISSION_SCOPED = frozenset({UploadKind.PROGRESSION, UploadKind.REFERENCE})


def kind_for_role(role: MediaRole) -> UploadKind:
    return UploadKind(role.value)


def new_object_key(kind: UploadKind, scope_id: uuid.UUID | str, extension: str) -> str:
    # uuid4 comes from os.urandom, so sibling keys cannot be guessed
    return f"{NAMESPACES[kind]}/{scope_id}/{uuid.uuid4()}.{extension.lstrip('.')}"


def public_url_for(key: str, base_url: str | None = None) -> str:
    base = (base_url or settings.PUBLIC_BASE_URL).rstrip("/")
    return f"{base}/{key}"


def key_from_public_url(public_url: str, base_url: str | None = None) -> str | None:
    """Storage key for a URL under our public base, or None for anything else."""
    base = (base_url or settings.PUBLIC_BASE_URL).rstrip("/") + "/"
    if not public_url or not public_url.startswith(base):
        return None
    key = public_url[len(base):].split("?", 1)[0].split("#", 1)[0]
    if not key or key.startswith("/") or ".." in key.split("/"):
        return None
    return key


def owner_prefixes(user_id: uuid.UUID | str) -> list[str]:
    return [
        f"{NAMESPACES[UploadKind.SUBMISSION]}/{user_id}/",
        f"{NAMESPACES[UploadKind.PROFILE]}/{user_id}/",
        f"{user_id}/",
    ]


def submission_prefixes(submission_id: uuid.UUID | str) -> list[str]:
    return [
        f"{NAMESPACES[UploadKind.PROGRESSION]}/{submission_id}/",
        f"{NAMESPACES[UploadKind.REFERENCE]}/{submission_id}/",
    ]


def owned_by(key: str, kind: UploadKind, scope_id: uuid.UUID | str) -> bool:
    """True when ``key`` lives under ``scope_id`` in ``kind``'s namespace (or the legacy flat layout)."""
    return key.startswith((f"{NAMESPACES[kind]}/{scope_id}/", f"{scope_id}/"))
