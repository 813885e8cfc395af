"""Permission key catalog.

Keys are dotted ``<domain>.<collection>.<action>`` strings. A key that is not
listed here is always denied.
"""

from __future__ import annotations

_CRUD = ("view", "create", "edit", "delete")


def _crud(prefix: str) -> set[str]:
    return {f"{prefix}.{action}" for action in _CRUD}


ARXIUS = "documentals.arxius"
LLIBRES = "documentals.llibres"
REGISTRES = "documentals.registres"
MUNICIPIS = "territori.municipis"
PAISOS = "territori.paisos"
NIVELLS = "territori.nivells"
ECLESIASTIC = "territori.eclesiastic"
NOMS_HISTORICS = "territori.noms_historics"
PERSONES = "persones"
COGNOMS = "cognoms"
EVENTS = "events"

WIKI_REVERT = "wiki.revert"
MODERACIO_VIEW = "moderacio.view"
MODERACIO_MODERATE = "moderacio.moderate"
ADMIN_POLITIQUES = "admin.politiques.manage"
ADMIN_PUNTS_VIEW = "admin.punts.view"
ADMIN_PUNTS_EDIT = "admin.punts.edit"
ADMIN_ACHIEVEMENTS_VIEW = "admin.achievements.view"
ADMIN_ACHIEVEMENTS_EDIT = "admin.achievements.edit"
ADMIN_COGNOMS_MERGE = "admin.cognoms.merge"
ADMIN_USUARIS_VIEW = "admin.usuaris.view"

DOMAIN_PREFIXES = (
    ARXIUS,
    LLIBRES,
    REGISTRES,
    MUNICIPIS,
    PAISOS,
    NIVELLS,
    ECLESIASTIC,
    NOMS_HISTORICS,
    PERSONES,
    COGNOMS,
    EVENTS,
)

PERMISSION_KEYS: frozenset[str] = frozenset(
    set().union(*(_crud(prefix) for prefix in DOMAIN_PREFIXES))
    | {
        WIKI_REVERT,
        MODERACIO_VIEW,
        MODERACIO_MODERATE,
        ADMIN_POLITIQUES,
        ADMIN_PUNTS_VIEW,
        ADMIN_PUNTS_EDIT,
        ADMIN_ACHIEVEMENTS_VIEW,
        ADMIN_ACHIEVEMENTS_EDIT,
        ADMIN_COGNOMS_MERGE,
        ADMIN_USUARIS_VIEW,
    }
)


def is_known_key(key: str) -> bool:
    return key in PERMISSION_KEYS
