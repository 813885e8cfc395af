"""ORM models for users, policies, territory, contributed entities and governance tables."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from cerca.db.base import Base, BigID, JSONDoc, ModeratedMixin, utcnow

WIKI_OBJECT_TYPES = ("municipi", "arxiu", "llibre", "persona", "cognom", "event_historic")


# ---------------------------------------------------------------------------
# Users & groups
# ---------------------------------------------------------------------------


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(BigID, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    email: Mapped[str] = mapped_column(String(320), unique=True, nullable=False)
    password_hash: Mapped[str] = mapped_column(String(256), nullable=False)
    nom: Mapped[str | None] = mapped_column(String(100), nullable=True)
    cognoms: Mapped[str | None] = mapped_column(String(200), nullable=True)
    preferred_lang: Mapped[str | None] = mapped_column(String(8), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    public_profile: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    show_activity: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    activation_token_hash: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    activation_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    last_login: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class Group(Base):
    __tablename__ = "grups"

    id: Mapped[int] = mapped_column(BigID, primary_key=True, autoincrement=True)
    nom: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    descripcio: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class UserGroup(Base):
    __tablename__ = "user_groups"

    user_id: Mapped[int] = mapped_column(BigID, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    group_id: Mapped[int] = mapped_column(BigID, ForeignKey("grups.id", ondelete="CASCADE"), primary_key=True)


# ---------------------------------------------------------------------------
# Policies
# ---------------------------------------------------------------------------


class Policy(Base):
    __tablename__ = "policies"

    id: Mapped[int] = mapped_column(BigID, primary_key=True, autoincrement=True)
    nom: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    descripcio: Mapped[str | None] = mapped_column(Text, nullable=True)
    permisos: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, onupdate=utcnow)


class PolicyUser(Base):
    __tablename__ = "policy_users"

    policy_id: Mapped[int] = mapped_column(BigID, ForeignKey("policies.id", ondelete="CASCADE"), primary_key=True)
    user_id: Mapped[int] = mapped_column(BigID, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)


class PolicyGroup(Base):
    __tablename__ = "policy_groups"

    policy_id: Mapped[int] = mapped_column(BigID, ForeignKey("policies.id", ondelete="CASCADE"), primary_key=True)
    group_id: Mapped[int] = mapped_column(BigID, ForeignKey("grups.id", ondelete="CASCADE"), primary_key=True)


# ---------------------------------------------------------------------------
# Territory
# ---------------------------------------------------------------------------


class Pais(ModeratedMixin, Base):
    __tablename__ = "paisos"

    id: Mapped[int] = mapped_column(BigID, primary_key=True, autoincrement=True)
    codi_iso2: Mapped[str] = mapped_column(String(2), unique=True, nullable=False)
    codi_iso3: Mapped[str | None] = mapped_column(String(3), nullable=True)
    nom: Mapped[str] = mapped_column(String(200), nullable=False)


class NivellAdministratiu(ModeratedMixin, Base):
    __tablename__ = "nivells_administratius"

    id: Mapped[int] = mapped_column(BigID, primary_key=True, autoincrement=True)
    pais_id: Mapped[int | None] = mapped_column(BigID, ForeignKey("paisos.id"), nullable=True)
    nivel: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    nom_nivell: Mapped[str] = mapped_column(String(200), nullable=False)
    tipus_nivell: Mapped[str | None] = mapped_column(String(50), nullable=True)
    parent_id: Mapped[int | None] = mapped_column(BigID, ForeignKey("nivells_administratius.id"), nullable=True)


class Municipi(ModeratedMixin, Base):
    """Levels 1..7 are the enclosing administrative levels; 3 is the province and 4 the comarca."""

    __tablename__ = "municipis"

    id: Mapped[int] = mapped_column(BigID, primary_key=True, autoincrement=True)
    nom: Mapped[str] = mapped_column(String(200), nullable=False)
    tipus: Mapped[str | None] = mapped_column(String(50), nullable=True)
    codi_postal: Mapped[str | None] = mapped_column(String(10), nullable=True)
    nivell_1_id: Mapped[int | None] = mapped_column(BigID, ForeignKey("nivells_administratius.id"), nullable=True)
    nivell_2_id: Mapped[int | None] = mapped_column(BigID, ForeignKey("nivells_administratius.id"), nullable=True)
    nivell_3_id: Mapped[int | None] = mapped_column(BigID, ForeignKey("nivells_administratius.id"), nullable=True)
    nivell_4_id: Mapped[int | None] = mapped_column(BigID, ForeignKey("nivells_administratius.id"), nullable=True)
    nivell_5_id: Mapped[int | None] = mapped_column(BigID, ForeignKey("nivells_administratius.id"), nullable=True)
    nivell_6_id: Mapped[int | None] = mapped_column(BigID, ForeignKey("nivells_administratius.id"), nullable=True)
    nivell_7_id: Mapped[int | None] = mapped_column(BigID, ForeignKey("nivells_administratius.id"), nullable=True)
    latitud: Mapped[float | None] = mapped_column(Float, nullable=True)
    longitud: Mapped[float | None] = mapped_column(Float, nullable=True)

    @property
    def nivell_ids(self) -> list[int | None]:
        return [
            self.nivell_1_id,
            self.nivell_2_id,
            self.nivell_3_id,
            self.nivell_4_id,
            self.nivell_5_id,
            self.nivell_6_id,
            self.nivell_7_id,
        ]


class Arquebisbat(ModeratedMixin, Base):
    """Ecclesiastical entity (archdiocese, diocese, parish...). ``nivell`` is a rank, not a level id."""

    __tablename__ = "arquebisbats"

    id: Mapped[int] = mapped_column(BigID, primary_key=True, autoincrement=True)
    nom: Mapped[str] = mapped_column(String(200), nullable=False)
    tipus_entitat: Mapped[str | None] = mapped_column(String(50), nullable=True)
    pais_id: Mapped[int | None] = mapped_column(BigID, ForeignKey("paisos.id"), nullable=True)
    nivell: Mapped[int | None] = mapped_column(Integer, nullable=True)
    parent_id: Mapped[int | None] = mapped_column(BigID, ForeignKey("arquebisbats.id"), nullable=True)
    any_inici: Mapped[int | None] = mapped_column(Integer, nullable=True)
    any_fi: Mapped[int | None] = mapped_column(Integer, nullable=True)


class NomHistoric(ModeratedMixin, Base):
    __tablename__ = "noms_historics"

    id: Mapped[int] = mapped_column(BigID, primary_key=True, autoincrement=True)
    entitat_tipus: Mapped[str] = mapped_column(String(32), nullable=False)
    entitat_id: Mapped[int] = mapped_column(BigID, nullable=False, index=True)
    nom: Mapped[str] = mapped_column(String(200), nullable=False)
    any_inici: Mapped[int | None] = mapped_column(Integer, nullable=True)
    any_fi: Mapped[int | None] = mapped_column(Integer, nullable=True)
    font: Mapped[str | None] = mapped_column(Text, nullable=True)


# ---------------------------------------------------------------------------
# Documentary sources
# ---------------------------------------------------------------------------


class Arxiu(ModeratedMixin, Base):
    __tablename__ = "arxius"

    id: Mapped[int] = mapped_column(BigID, primary_key=True, autoincrement=True)
    nom: Mapped[str] = mapped_column(String(255), nullable=False)
    tipus: Mapped[str | None] = mapped_column(String(50), nullable=True)
    acces: Mapped[str | None] = mapped_column(String(50), nullable=True)
    municipi_id: Mapped[int | None] = mapped_column(BigID, ForeignKey("municipis.id"), nullable=True, index=True)
    entitat_eclesiastica_id: Mapped[int | None] = mapped_column(BigID, ForeignKey("arquebisbats.id"), nullable=True)
    adreca: Mapped[str | None] = mapped_column(String(255), nullable=True)
    web: Mapped[str | None] = mapped_column(String(255), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)


class Llibre(ModeratedMixin, Base):
    __tablename__ = "llibres"

    id: Mapped[int] = mapped_column(BigID, primary_key=True, autoincrement=True)
    titol: Mapped[str] = mapped_column(String(255), nullable=False)
    tipus_llibre: Mapped[str | None] = mapped_column(String(50), nullable=True)
    cronologia: Mapped[str | None] = mapped_column(String(100), nullable=True)
    any_inici: Mapped[int | None] = mapped_column(Integer, nullable=True)
    any_fi: Mapped[int | None] = mapped_column(Integer, nullable=True)
    municipi_id: Mapped[int | None] = mapped_column(BigID, ForeignKey("municipis.id"), nullable=True, index=True)
    arquebisbat_id: Mapped[int | None] = mapped_column(BigID, ForeignKey("arquebisbats.id"), nullable=True)
    codi_digital: Mapped[str | None] = mapped_column(String(100), nullable=True)
    pagines: Mapped[int | None] = mapped_column(Integer, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)


class ArxiuLlibre(Base):
    __tablename__ = "arxius_llibres"

    arxiu_id: Mapped[int] = mapped_column(BigID, ForeignKey("arxius.id", ondelete="CASCADE"), primary_key=True)
    llibre_id: Mapped[int] = mapped_column(BigID, ForeignKey("llibres.id", ondelete="CASCADE"), primary_key=True)
    signatura: Mapped[str | None] = mapped_column(String(100), nullable=True)


class LlibrePagina(ModeratedMixin, Base):
    __tablename__ = "llibre_pagines"

    id: Mapped[int] = mapped_column(BigID, primary_key=True, autoincrement=True)
    llibre_id: Mapped[int] = mapped_column(BigID, ForeignKey("llibres.id", ondelete="CASCADE"), nullable=False, index=True)
    num_pagina: Mapped[int] = mapped_column(Integer, nullable=False)
    estat: Mapped[str | None] = mapped_column(String(32), nullable=True)
    indexada: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)


# ---------------------------------------------------------------------------
# People, surnames, historical events
# ---------------------------------------------------------------------------


class Persona(ModeratedMixin, Base):
    __tablename__ = "persones"

    id: Mapped[int] = mapped_column(BigID, primary_key=True, autoincrement=True)
    nom: Mapped[str] = mapped_column(String(100), nullable=False)
    cognom1: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    cognom2: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    sexe: Mapped[str | None] = mapped_column(String(1), nullable=True)
    any_naixement: Mapped[int | None] = mapped_column(Integer, nullable=True)
    any_defuncio: Mapped[int | None] = mapped_column(Integer, nullable=True)
    municipi_id: Mapped[int | None] = mapped_column(BigID, ForeignKey("municipis.id"), nullable=True, index=True)
    ofici: Mapped[str | None] = mapped_column(String(100), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)


class Cognom(ModeratedMixin, Base):
    __tablename__ = "cognoms"

    id: Mapped[int] = mapped_column(BigID, primary_key=True, autoincrement=True)
    forma: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    origen: Mapped[str | None] = mapped_column(String(255), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)


class CognomVariant(ModeratedMixin, Base):
    __tablename__ = "cognom_variants"
    __table_args__ = (UniqueConstraint("cognom_id", "variant", name="uq_cognom_variant"),)

    id: Mapped[int] = mapped_column(BigID, primary_key=True, autoincrement=True)
    cognom_id: Mapped[int] = mapped_column(BigID, ForeignKey("cognoms.id", ondelete="CASCADE"), nullable=False)
    variant: Mapped[str] = mapped_column(String(100), nullable=False)


class EventHistoric(ModeratedMixin, Base):
    __tablename__ = "events_historics"

    id: Mapped[int] = mapped_column(BigID, primary_key=True, autoincrement=True)
    titol: Mapped[str] = mapped_column(String(255), nullable=False)
    tipus: Mapped[str | None] = mapped_column(String(50), nullable=True)
    any_inici: Mapped[int | None] = mapped_column(Integer, nullable=True)
    any_fi: Mapped[int | None] = mapped_column(Integer, nullable=True)
    descripcio: Mapped[str | None] = mapped_column(Text, nullable=True)
    municipi_id: Mapped[int | None] = mapped_column(BigID, ForeignKey("municipis.id"), nullable=True)


# ---------------------------------------------------------------------------
# Raw transcriptions
# ---------------------------------------------------------------------------


class TranscripcioRaw(ModeratedMixin, Base):
    __tablename__ = "transcripcions_raw"

    id: Mapped[int] = mapped_column(BigID, primary_key=True, autoincrement=True)
    llibre_id: Mapped[int] = mapped_column(BigID, ForeignKey("llibres.id"), nullable=False, index=True)
    pagina_id: Mapped[int | None] = mapped_column(BigID, ForeignKey("llibre_pagines.id"), nullable=True)
    num_pagina_text: Mapped[str | None] = mapped_column(String(32), nullable=True)
    tipus_acte: Mapped[str | None] = mapped_column(String(32), nullable=True)
    any_doc: Mapped[int | None] = mapped_column(Integer, nullable=True)
    data_acte_text: Mapped[str | None] = mapped_column(String(64), nullable=True)
    notes_marginals: Mapped[str | None] = mapped_column(Text, nullable=True)


class TranscripcioPersonaRaw(Base):
    __tablename__ = "transcripcions_persones_raw"

    id: Mapped[int] = mapped_column(BigID, primary_key=True, autoincrement=True)
    transcripcio_id: Mapped[int] = mapped_column(
        BigID, ForeignKey("transcripcions_raw.id", ondelete="CASCADE"), nullable=False, index=True
    )
    rol: Mapped[str] = mapped_column(String(32), nullable=False)
    nom: Mapped[str | None] = mapped_column(String(100), nullable=True)
    cognom1: Mapped[str | None] = mapped_column(String(100), nullable=True)
    cognom2: Mapped[str | None] = mapped_column(String(100), nullable=True)
    sexe: Mapped[str | None] = mapped_column(String(1), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)


class TranscripcioAtributRaw(Base):
    __tablename__ = "transcripcions_atributs_raw"

    id: Mapped[int] = mapped_column(BigID, primary_key=True, autoincrement=True)
    transcripcio_id: Mapped[int] = mapped_column(
        BigID, ForeignKey("transcripcions_raw.id", ondelete="CASCADE"), nullable=False, index=True
    )
    clau: Mapped[str] = mapped_column(String(64), nullable=False)
    tipus_valor: Mapped[str | None] = mapped_column(String(16), nullable=True)
    valor_text: Mapped[str | None] = mapped_column(Text, nullable=True)


class TranscripcioRawChange(Base):
    __tablename__ = "transcripcions_raw_canvis"

    id: Mapped[int] = mapped_column(BigID, primary_key=True, autoincrement=True)
    transcripcio_id: Mapped[int] = mapped_column(
        BigID, ForeignKey("transcripcions_raw.id", ondelete="CASCADE"), nullable=False, index=True
    )
    change_type: Mapped[str] = mapped_column(String(16), nullable=False, default="field")
    field_key: Mapped[str | None] = mapped_column(String(128), nullable=True)
    old_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    new_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    change_metadata: Mapped[str] = mapped_column("metadata", Text, nullable=False, default="{}")
    moderation_state: Mapped[str] = mapped_column(String(16), nullable=False, default="pendent")
    changed_by: Mapped[int | None] = mapped_column(BigID, nullable=True)
    changed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    moderated_by: Mapped[int | None] = mapped_column(BigID, nullable=True)
    moderated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


# ---------------------------------------------------------------------------
# Wiki
# ---------------------------------------------------------------------------


class WikiChange(Base):
    __tablename__ = "wiki_canvis"
    __table_args__ = (
        CheckConstraint(
            "object_type IN ('municipi', 'arxiu', 'llibre', 'persona', 'cognom', 'event_historic')",
            name="ck_wiki_canvis_object_type",
        ),
        Index("ix_wiki_canvis_object", "object_type", "object_id", "moderation_state"),
    )

    id: Mapped[int] = mapped_column(BigID, primary_key=True, autoincrement=True)
    object_type: Mapped[str] = mapped_column(String(32), nullable=False)
    object_id: Mapped[int] = mapped_column(BigID, nullable=False)
    change_type: Mapped[str] = mapped_column(String(16), nullable=False, default="form")
    field_key: Mapped[str | None] = mapped_column(String(128), nullable=True)
    old_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    new_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    change_metadata: Mapped[str] = mapped_column("metadata", Text, nullable=False, default="{}")
    moderation_state: Mapped[str] = mapped_column(String(16), nullable=False, default="pendent")
    moderation_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    changed_by: Mapped[int | None] = mapped_column(BigID, nullable=True, index=True)
    changed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    moderated_by: Mapped[int | None] = mapped_column(BigID, nullable=True)
    moderated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class WikiMark(Base):
    __tablename__ = "wiki_marques"
    __table_args__ = (UniqueConstraint("object_type", "object_id", "user_id", name="uq_wiki_marca"),)

    id: Mapped[int] = mapped_column(BigID, primary_key=True, autoincrement=True)
    object_type: Mapped[str] = mapped_column(String(32), nullable=False)
    object_id: Mapped[int] = mapped_column(BigID, nullable=False)
    user_id: Mapped[int] = mapped_column(BigID, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    tipus: Mapped[str] = mapped_column(String(16), nullable=False)
    is_public: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, onupdate=utcnow)


class WikiPublicCount(Base):
    __tablename__ = "wiki_public_counts"

    object_type: Mapped[str] = mapped_column(String(32), primary_key=True)
    object_id: Mapped[int] = mapped_column(BigID, primary_key=True)
    tipus: Mapped[str] = mapped_column(String(16), primary_key=True)
    n: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


# ---------------------------------------------------------------------------
# Activity & points
# ---------------------------------------------------------------------------


class PointsRule(Base):
    __tablename__ = "points_rules"

    id: Mapped[int] = mapped_column(BigID, primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    points: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, onupdate=utcnow)


class UserPoints(Base):
    __tablename__ = "user_points"

    user_id: Mapped[int] = mapped_column(BigID, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    total: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, default=utcnow)


class UserActivity(Base):
    __tablename__ = "user_activity"
    __table_args__ = (Index("ix_user_activity_user_created", "user_id", "created_at"),)

    id: Mapped[int] = mapped_column(BigID, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigID, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    rule_id: Mapped[int | None] = mapped_column(BigID, ForeignKey("points_rules.id"), nullable=True)
    action: Mapped[str] = mapped_column(String(32), nullable=False)
    object_type: Mapped[str] = mapped_column(String(32), nullable=False)
    object_id: Mapped[int | None] = mapped_column(BigID, nullable=True)
    points: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="validat")
    moderated_by: Mapped[int | None] = mapped_column(BigID, nullable=True)
    details: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


# ---------------------------------------------------------------------------
# Achievements
# ---------------------------------------------------------------------------


class Achievement(Base):
    __tablename__ = "achievements"

    id: Mapped[int] = mapped_column(BigID, primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    rarity: Mapped[str] = mapped_column(String(16), nullable=False, default="common")
    visibility: Mapped[str] = mapped_column(String(16), nullable=False, default="visible")
    domain: Mapped[str] = mapped_column(String(32), nullable=False, default="general")
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    repeatable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    icon: Mapped[str | None] = mapped_column(String(255), nullable=True)
    rule_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, onupdate=utcnow)


class UserAchievement(Base):
    """Non-repeatable awards always use instance 0, so the unique key makes them idempotent."""

    __tablename__ = "user_achievements"
    __table_args__ = (
        UniqueConstraint("user_id", "achievement_id", "instance", name="uq_user_achievement_instance"),
    )

    id: Mapped[int] = mapped_column(BigID, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigID, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    achievement_id: Mapped[int] = mapped_column(
        BigID, ForeignKey("achievements.id", ondelete="CASCADE"), nullable=False
    )
    instance: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    awarded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    award_metadata: Mapped[dict[str, Any]] = mapped_column(JSONDoc, nullable=False, default=dict)


# ---------------------------------------------------------------------------
# Surname redirects
# ---------------------------------------------------------------------------


class CognomRedirect(Base):
    __tablename__ = "cognom_redirects"

    from_id: Mapped[int] = mapped_column(BigID, ForeignKey("cognoms.id", ondelete="CASCADE"), primary_key=True)
    to_id: Mapped[int] = mapped_column(BigID, ForeignKey("cognoms.id", ondelete="CASCADE"), nullable=False, index=True)
    reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    created_by: Mapped[int | None] = mapped_column(BigID, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class CognomRedirectSuggestion(Base):
    __tablename__ = "cognom_redirect_suggestions"
    __table_args__ = (Index("ix_cognom_suggestion_pair", "from_id", "to_id", "moderation_state"),)

    id: Mapped[int] = mapped_column(BigID, primary_key=True, autoincrement=True)
    from_id: Mapped[int] = mapped_column(BigID, ForeignKey("cognoms.id", ondelete="CASCADE"), nullable=False)
    to_id: Mapped[int] = mapped_column(BigID, ForeignKey("cognoms.id", ondelete="CASCADE"), nullable=False)
    reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    moderation_state: Mapped[str] = mapped_column(String(16), nullable=False, default="pendent")
    created_by: Mapped[int | None] = mapped_column(BigID, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    moderated_by: Mapped[int | None] = mapped_column(BigID, nullable=True)
    moderated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
