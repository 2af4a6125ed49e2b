"""
Role Classifier — raw role labels → capability class.

Every gate downstream switches on ``RoleClass``; raw label strings never
leave this module.

Usage:
    from agencyops.services.roles import ActingContext, RoleClass, classify_roles

    classify_roles(["Editor de Vídeo"])        # RoleClass.COLLABORATOR
    ctx = ActingContext.from_labels(7, ["Admin"], viewing_client_id=3)
"""

import unicodedata
from dataclasses import dataclass
from enum import Enum


class RoleClass(str, Enum):
    ADMIN = "admin"
    COLLABORATOR = "collaborator"
    CLIENT = "client"
    UNCLASSIFIED = "unclassified"


# Normalised label → class. Portuguese labels are the ones the legacy
# portals still send.
_ADMIN_LABELS = {"owner", "admin"}
_COLLABORATOR_LABELS = {
    "collaborator", "colaborador",
    "video_editor", "editor_de_video",
    "social_media", "social_midia",
    "web_designer", "webdesigner",
    "administrative", "administrativo",
    "finance",
}
_CLIENT_LABELS = {"client", "cliente"}


def normalize_label(label) -> str:
    """Casefold, strip accents, and collapse spaces/hyphens to underscores."""
    if label is None:
        return ""
    text = unicodedata.normalize("NFKD", str(label))
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    text = text.strip().casefold().replace("-", " ")
    return "_".join(text.split())


def classify_roles(labels) -> RoleClass:
    """Resolve a set of raw labels to exactly one class.

    Precedence is Admin > Collaborator > Client. Unknown labels are
    ignored; no match at all yields ``UNCLASSIFIED``.
    """
    if isinstance(labels, str):
        labels = [labels]
    normalized = {normalize_label(lbl) for lbl in (labels or [])}
    if normalized & _ADMIN_LABELS:
        return RoleClass.ADMIN
    if normalized & _COLLABORATOR_LABELS:
        return RoleClass.COLLABORATOR
    if normalized & _CLIENT_LABELS:
        return RoleClass.CLIENT
    return RoleClass.UNCLASSIFIED


@dataclass(frozen=True)
class ActingContext:
    """Explicit caller context passed to every service call.

    ``viewing_client_id`` is honoured only for admins ("acting as" a
    client). For client subjects it is the client the profile is linked to.
    """

    subject_id: int | None
    role: RoleClass
    viewing_client_id: int | None = None

    @classmethod
    def from_labels(cls, subject_id, labels, viewing_client_id=None, own_client_id=None):
        role = classify_roles(labels)
        if role is RoleClass.ADMIN:
            client_id = viewing_client_id
        elif role is RoleClass.CLIENT:
            client_id = own_client_id
        else:
            client_id = None
        return cls(subject_id=subject_id, role=role, viewing_client_id=client_id)

    @property
    def is_admin(self) -> bool:
        return self.role is RoleClass.ADMIN

    @property
    def is_collaborator(self) -> bool:
        return self.role is RoleClass.COLLABORATOR

    @property
    def is_client(self) -> bool:
        return self.role is RoleClass.CLIENT

    def acts_for_client(self, client_id) -> bool:
        """True if the caller is that client, or an admin acting as it."""
        if self.role not in (RoleClass.CLIENT, RoleClass.ADMIN):
            return False
        return client_id is not None and self.viewing_client_id == client_id
