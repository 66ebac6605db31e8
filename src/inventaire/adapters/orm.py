"""
Mapping ORM avec SQLAlchemy (classical mapping).

On définit les tables séparément, puis on mappe les classes
du domaine sur ces tables. Cela permet au modèle de domaine
de rester ignorant de la persistance (persistence ignorance).

Les noms de colonnes SQL restent en ASCII et en anglais,
le mapping traduit vers les attributs français du domaine.
"""

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    event,
)
from sqlalchemy.orm import registry, relationship

from inventaire.domain import model
from inventaire.domain.statut import StatutLot

metadata = MetaData()
mapper_registry = registry(metadata=metadata)


def _valeurs(enum_cls):
    return [membre.value for membre in enum_cls]


# --- Définition des tables ---

products = Table(
    "products",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("name", String(255), nullable=False),
    Column("reorder_threshold", Integer, nullable=False, server_default="0"),
    Column("total_stock", Integer, nullable=False, server_default="0"),
    Column("is_active", Boolean, nullable=False, server_default="1"),
    Column("version_number", Integer, nullable=False, server_default="0"),
)

batches = Table(
    "batches",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("product_id", String(64), ForeignKey("products.id"), nullable=False, index=True),
    Column("batch_number", String(64), nullable=False, unique=True),
    Column("quantity_original", Integer, nullable=False),
    Column("quantity_remaining", Integer, nullable=False),
    Column("expiry_date", Date, nullable=True),
    Column("received_date", Date, nullable=True),
    Column("cost_per_unit", Numeric(12, 2), nullable=True),
    Column("supplier", String(255), nullable=True),
    Column(
        "status",
        Enum(StatutLot, native_enum=False, length=20, values_callable=_valeurs),
        nullable=False,
    ),
    Column("created_at", DateTime, nullable=False),
    CheckConstraint(
        "quantity_remaining >= 0 AND quantity_remaining <= quantity_original",
        name="ck_batches_quantity_range",
    ),
)

audit_entries = Table(
    "audit_entries",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("product_id", String(64), ForeignKey("products.id"), nullable=False, index=True),
    Column("batch_id", String(36), ForeignKey("batches.id"), nullable=True, index=True),
    Column(
        "action",
        Enum(model.TypeAction, native_enum=False, length=30, values_callable=_valeurs),
        nullable=False,
    ),
    Column("quantity_delta", Integer, nullable=False),
    Column("quantity_before", Integer, nullable=False),
    Column("quantity_after", Integer, nullable=False),
    Column("reason", Text, nullable=False, server_default=""),
    Column("actor_id", String(64), nullable=True),
    Column("reference_id", String(64), nullable=True, index=True),
    Column("created_at", DateTime, nullable=False, index=True),
    Column("protected", Boolean, nullable=False, server_default="0"),
    CheckConstraint(
        "quantity_after = quantity_before + quantity_delta",
        name="ck_audit_entries_delta",
    ),
)

# Compteur par jour pour les numéros de lot générés (BTyymmdd-nnn)
batch_number_sequences = Table(
    "batch_number_sequences",
    metadata,
    Column("day", Date, primary_key=True),
    Column("last_value", Integer, nullable=False),
)


_mappers_démarrés = False


def start_mappers() -> None:
    """
    Configure le mapping entre les classes du domaine et les tables SQL.

    numéro_version sert de version_id_col : chaque UPDATE du produit
    porte `WHERE version_number = <version lue>`. Si une autre transaction
    a validé entre-temps, aucune ligne n'est touchée et SQLAlchemy lève
    StaleDataError. Le domaine incrémente lui-même la version
    (version_id_generator=False).
    """
    global _mappers_démarrés
    if _mappers_démarrés:
        return

    batches_mapper = mapper_registry.map_imperatively(
        model.Lot,
        batches,
        properties={
            "id_lot": batches.c.id,
            "id_produit": batches.c.product_id,
            "numéro_lot": batches.c.batch_number,
            "quantité_originale": batches.c.quantity_original,
            "quantité_restante": batches.c.quantity_remaining,
            "date_expiration": batches.c.expiry_date,
            "date_réception": batches.c.received_date,
            "coût_unitaire": batches.c.cost_per_unit,
            "fournisseur": batches.c.supplier,
            "statut": batches.c.status,
            "créé_le": batches.c.created_at,
        },
    )
    products_mapper = mapper_registry.map_imperatively(
        model.Produit,
        products,
        properties={
            "id_produit": products.c.id,
            "nom": products.c.name,
            "seuil_réapprovisionnement": products.c.reorder_threshold,
            "stock_total": products.c.total_stock,
            "actif": products.c.is_active,
            "numéro_version": products.c.version_number,
            "lots": relationship(
                batches_mapper,
                primaryjoin=(products.c.id == batches.c.product_id),
                order_by=batches.c.created_at,
            ),
        },
        version_id_col=products.c.version_number,
        version_id_generator=False,
    )
    mapper_registry.map_imperatively(
        model.EntréeAudit,
        audit_entries,
        properties={
            "id_entrée": audit_entries.c.id,
            "id_produit": audit_entries.c.product_id,
            "id_lot": audit_entries.c.batch_id,
            "delta": audit_entries.c.quantity_delta,
            "quantité_avant": audit_entries.c.quantity_before,
            "quantité_après": audit_entries.c.quantity_after,
            "motif": audit_entries.c.reason,
            "id_acteur": audit_entries.c.actor_id,
            "id_référence": audit_entries.c.reference_id,
            "horodatage": audit_entries.c.created_at,
            "protégée": audit_entries.c.protected,
            # Jamais renseignées : elles ordonnent seulement les INSERT
            # (produit et lot avant l'entrée d'audit qui les référence).
            "_produit": relationship(products_mapper),
            "_lot": relationship(batches_mapper),
        },
    )
    _mappers_démarrés = True


@event.listens_for(model.Produit, "load")
def receive_load(produit: model.Produit, _: object) -> None:
    """Initialise la liste d'événements quand un Produit est chargé depuis la BDD."""
    produit.événements = []
