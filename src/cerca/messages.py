"""Message catalog for error keys (Catalan and English)."""

from __future__ import annotations

from typing import Any

_CATALOG: dict[str, dict[str, str]] = {
    "ca": {
        "error.internal": "S'ha produït un error intern.",
        "error.validation": "Les dades enviades no són vàlides.",
        "error.conflict": "Ja existeix un registre amb aquestes dades.",
        "error.forbidden": "No tens permís per fer aquesta acció.",
        "error.not_found": "No s'ha trobat l'element.",
        "error.required": "El camp {field} és obligatori.",
        "error.year_range": "L'any del camp {field} no és vàlid.",
        "error.too_long": "El camp {field} és massa llarg.",
        "error.iso_code": "El codi ISO del camp {field} no és vàlid.",
        "error.self_parent": "Un element no pot ser el seu propi pare.",
        "error.object_type": "Tipus d'objecte desconegut: {object_type}.",
        "error.in_use": "No es pot eliminar: l'element està en ús.",
        "auth.required": "Cal iniciar sessió.",
        "auth.invalid_credentials": "Usuari o contrasenya incorrectes.",
        "auth.inactive": "El compte encara no està activat.",
        "auth.invalid_token": "El token d'activació no és vàlid o ha caducat.",
        "auth.duplicate": "Aquest usuari o correu ja està registrat.",
        "auth.password.empty": "Cal indicar una contrasenya.",
        "auth.password.length": "La contrasenya ha de tenir entre 8 i 128 caràcters.",
        "auth.password.weak": "La contrasenya ha de combinar lletres i xifres.",
        "csrf.invalid": "El token CSRF no és vàlid.",
        "wiki.guardrail.meta": "El canvi és massa gran per desar-lo.",
        "wiki.guardrail.pending_user": "Tens massa canvis pendents per aquest element.",
        "wiki.guardrail.pending_object": "Aquest element té massa canvis pendents.",
        "wiki.guardrail.rate": "Massa canvis seguits. Torna-ho a provar d'aquí a una estona.",
        "wiki.mark.invalid": "Tipus de marca no vàlid.",
        "wiki.change.invalid": "El canvi no és vàlid per aquest element.",
        "wiki.change.empty": "El canvi no modifica cap camp.",
        "wiki.version.invalid": "Versió desconeguda.",
        "cognoms.redirect.cycle": "Aquesta redirecció crearia un cicle.",
        "cognoms.merge.invalid": "Cal indicar un cognom canònic i almenys un àlies.",
        "policy.document.invalid": "El document de permisos no és vàlid.",
        "achievements.rule.invalid": "La regla de l'assoliment no és vàlida.",
        "achievements.disabled": "L'assoliment està desactivat.",
        "points.rule.invalid": "Cal indicar el codi i el nom de la regla.",
        "moderation.invalid_state": "L'element ja ha estat moderat.",
    },
    "en": {
        "error.internal": "An internal error occurred.",
        "error.validation": "The submitted data is not valid.",
        "error.conflict": "A record with these values already exists.",
        "error.forbidden": "You are not allowed to perform this action.",
        "error.not_found": "Item not found.",
        "error.required": "The field {field} is required.",
        "error.year_range": "The year in {field} is out of range.",
        "error.too_long": "The field {field} is too long.",
        "error.iso_code": "The ISO code in {field} is not valid.",
        "error.self_parent": "An item cannot be its own parent.",
        "error.object_type": "Unknown object type: {object_type}.",
        "error.in_use": "Cannot delete: the item is in use.",
        "auth.required": "Authentication required.",
        "auth.invalid_credentials": "Invalid username or password.",
        "auth.inactive": "The account is not activated yet.",
        "auth.invalid_token": "The activation token is invalid or expired.",
        "auth.duplicate": "This username or email is already registered.",
        "auth.password.empty": "A password is required.",
        "auth.password.length": "The password must be 8 to 128 characters long.",
        "auth.password.weak": "The password must mix letters and digits.",
        "csrf.invalid": "Invalid CSRF token.",
        "wiki.guardrail.meta": "The change is too large to be saved.",
        "wiki.guardrail.pending_user": "You have too many pending changes for this item.",
        "wiki.guardrail.pending_object": "This item has too many pending changes.",
        "wiki.guardrail.rate": "Too many changes in a row. Please try again later.",
        "wiki.mark.invalid": "Invalid mark type.",
        "wiki.change.invalid": "The change does not belong to this item.",
        "wiki.change.empty": "The change does not modify any field.",
        "wiki.version.invalid": "Unknown version.",
        "cognoms.redirect.cycle": "This redirect would create a cycle.",
        "cognoms.merge.invalid": "A canonical surname and at least one alias are required.",
        "policy.document.invalid": "The permission document is not valid.",
        "achievements.rule.invalid": "The achievement rule is not valid.",
        "achievements.disabled": "The achievement is disabled.",
        "points.rule.invalid": "Rule code and name are required.",
        "moderation.invalid_state": "The item has already been moderated.",
    },
}

SUPPORTED_LANGS = tuple(_CATALOG)


def pick_lang(preferred: str | None, accept_language: str | None, default: str) -> str:
    """Choose a supported language from the user's locale or the Accept-Language header."""
    if preferred and preferred[:2].lower() in _CATALOG:
        return preferred[:2].lower()
    for part in (accept_language or "").split(","):
        code = part.split(";")[0].strip()[:2].lower()
        if code in _CATALOG:
            return code
    return default if default in _CATALOG else "ca"


def translate(lang: str, key: str, **params: Any) -> str:  # noqa: ANN401
    """Look up a message, falling back to Catalan and then to the key itself."""
    text = _CATALOG.get(lang, {}).get(key) or _CATALOG["ca"].get(key) or key
    if params:
        try:
            return text.format(**params)
        except (KeyError, IndexError):
            return text
    return text
