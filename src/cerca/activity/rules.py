"""Activity rule codes and status values."""

PENDENT = "pendent"
VALIDAT = "validat"
ANULAT = "anulat"
ACTIVITY_STATUSES = (PENDENT, VALIDAT, ANULAT)

PERSONA_CREATE = "persona_create"
PERSONA_UPDATE = "persona_update"
ARXIU_CREATE = "arxiu_create"
ARXIU_UPDATE = "arxiu_update"
LLIBRE_CREATE = "llibre_create"
LLIBRE_UPDATE = "llibre_update"
MUNICIPI_CREATE = "municipi_create"
MUNICIPI_UPDATE = "municipi_update"
COGNOM_CREATE = "cognom_create"
COGNOM_UPDATE = "cognom_update"
EVENT_HISTORIC_CREATE = "event_historic_create"
EVENT_HISTORIC_UPDATE = "event_historic_update"
LLIBRE_PAGINA_INDEX = "llibre_pagina_index"
MODERACIO_APPROVE = "moderacio_approve"
MODERACIO_REJECT = "moderacio_reject"
COGNOM_MERGE_SUGGEST = "cognom_merge_suggest"

# Actions recorded on activity rows.
ACTION_CREATE = "crear"
ACTION_UPDATE = "editar"
ACTION_APPROVE = "aprovar"
ACTION_REJECT = "rebutjar"
ACTION_DELETE = "eliminar"
