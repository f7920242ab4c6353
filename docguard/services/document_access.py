"""
Document Access Policy — who may view, download, print or copy a document.

View access is an ordered OR, cheapest check first:

    1. document is public
    2. user created the document
    3. user holds a superuser role
    4. access_groups contains the user's group id
    5. access_groups contains the user's group name
    6. access_groups contains the name of any active role the user holds
    7. document is PUBLISHED
    8. otherwise deny

Download / print / copy layer a second, independent permission-or-capability
check on top of view access.  Nothing here is cached: documents change too
often for a stable policy cache.
"""

import logging
from dataclasses import dataclass

from docguard.models.document import DocumentStatus
from docguard.services import permission_service
from docguard.services.authz_vocabulary import equivalent_names, is_superuser_role

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════════
# access_groups classification
# ═════════════════════════════════════════════════════════════════════════════

GROUP_ID = "group_id"
GROUP_NAME = "group_name"
ROLE_NAME = "role_name"
UNKNOWN = "unknown"


@dataclass(frozen=True)
class AccessGroupEntry:
    """One element of ``Document.access_groups`` with its inferred kind."""
    kind: str
    value: str


def _is_group_id(entry, user) -> bool:
    if user.group_id is None:
        return False
    return str(entry).strip() == str(user.group_id)


def classify_access_groups(entries, user, role_names=None) -> list[AccessGroupEntry]:
    """Tag each raw entry by what it matched for *user*.

    The stored list mixes group ids, group names and role names with no
    marker; the kind is only knowable relative to a user.  Entries that
    match nothing for this user are tagged ``unknown``.
    """
    if role_names is None:
        role_names = permission_service.get_user_role_names(user.id)
    group_name = user.group.name if user.group else None
    roles = set(role_names)

    out = []
    for raw in entries or []:
        value = str(raw).strip()
        if _is_group_id(raw, user):
            kind = GROUP_ID
        elif group_name and value == group_name:
            kind = GROUP_NAME
        elif value in roles:
            kind = ROLE_NAME
        else:
            kind = UNKNOWN
        out.append(AccessGroupEntry(kind, value))
    return out


# ═════════════════════════════════════════════════════════════════════════════
# View
# ═════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class AccessDecision:
    allowed: bool
    rule: str

    def to_dict(self) -> dict:
        return {"allowed": self.allowed, "rule": self.rule}


def explain_view_access(user, document) -> AccessDecision:
    """Evaluate view access and report which rule decided it."""
    if document.is_public:
        return AccessDecision(True, "public")
    if user is None or not user.is_active:
        return AccessDecision(False, "unauthenticated")
    if document.created_by_id is not None and document.created_by_id == user.id:
        return AccessDecision(True, "owner")

    role_names = permission_service.get_user_role_names(user.id)
    if any(is_superuser_role(r) for r in role_names):
        return AccessDecision(True, "superuser")

    entries = classify_access_groups(document.access_groups, user, role_names)
    kinds = {e.kind for e in entries}
    for kind in (GROUP_ID, GROUP_NAME, ROLE_NAME):
        if kind in kinds:
            return AccessDecision(True, kind)

    if document.status == DocumentStatus.PUBLISHED:
        return AccessDecision(True, "published")
    return AccessDecision(False, "no_match")


def can_view_document(user, document) -> bool:
    return explain_view_access(user, document).allowed


def filter_viewable_documents(user, documents) -> list:
    return [d for d in documents if can_view_document(user, d)]


# ═════════════════════════════════════════════════════════════════════════════
# Download / print / copy
# ═════════════════════════════════════════════════════════════════════════════

def _action_allowed(user, document, permission: str) -> bool:
    """View access plus *permission* or its mapped capability."""
    if not can_view_document(user, document):
        return False
    uid = user.id
    allowed = permission_service.has_equivalent_grant(uid, permission)
    if not allowed:
        logger.warning(
            "Document %s: %s denied, missing %s",
            document.id, permission, " or ".join(sorted(equivalent_names(permission))),
            extra={"user_id": uid, "decision": "deny", "reason": "missing_capability"},
        )
    return allowed


def can_download_document(user, document) -> bool:
    return _action_allowed(user, document, "pdf.download")


def can_print_document(user, document) -> bool:
    return _action_allowed(user, document, "pdf.print")


def can_copy_document(user, document) -> bool:
    return _action_allowed(user, document, "pdf.copy")
