"""
Views (lecture) pour le pattern CQRS.

Les views sont des fonctions de lecture pure qui interrogent
directement la base de données, sans passer par le modèle de domaine.

Le statut affiché d'un lot est recalculé à la lecture avec le même
classificateur que l'allocateur : seule la quarantaine vient de la base.
"""

from __future__ import annotations

from datetime import date, timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy import Date, DateTime, Numeric, bindparam, text

from inventaire.domain.model import ProduitIntrouvable
from inventaire.domain.statut import StatutLot, classer_statut
from inventaire.service_layer import unit_of_work

_COLONNES_LOT = dict(expiry_date=Date, received_date=Date, created_at=DateTime, cost_per_unit=Numeric(12, 2))

_ORDRE_FEFO = (
    " ORDER BY CASE WHEN expiry_date IS NULL THEN 1 ELSE 0 END,"
    " expiry_date, created_at, batch_number"
)


def _statut(ligne, aujourdhui: date, jours_alerte: int) -> StatutLot:
    if ligne.status == StatutLot.EN_QUARANTAINE.value:
        return StatutLot.EN_QUARANTAINE
    return classer_statut(ligne.quantity_remaining, ligne.expiry_date, aujourdhui, jours_alerte)


def _vérifier_produit(uow: unit_of_work.AbstractUnitOfWork, id_produit: str) -> None:
    existe = uow.session.execute(
        text("SELECT 1 FROM products WHERE id = :id_produit"),
        dict(id_produit=id_produit),
    ).first()
    if existe is None:
        raise ProduitIntrouvable(f"Produit inconnu : {id_produit}")


def _lot_en_dict(ligne, statut: StatutLot) -> dict:
    return dict(
        id_lot=ligne.id,
        id_produit=ligne.product_id,
        numéro_lot=ligne.batch_number,
        quantité_originale=ligne.quantity_original,
        quantité_restante=ligne.quantity_remaining,
        date_expiration=ligne.expiry_date.isoformat() if ligne.expiry_date else None,
        date_réception=ligne.received_date.isoformat() if ligne.received_date else None,
        coût_unitaire=str(ligne.cost_per_unit) if ligne.cost_per_unit is not None else None,
        fournisseur=ligne.supplier,
        statut=statut.value,
    )


def lots_du_produit(
    id_produit: str,
    uow: unit_of_work.AbstractUnitOfWork,
    aujourdhui: date,
    statut: Optional[StatutLot] = None,
    jours_alerte: int = 30,
) -> list[dict]:
    """
    Lots d'un produit dans l'ordre FEFO (sans expiration en dernier,
    puis réception la plus ancienne), filtrés par statut si demandé.
    """
    with uow:
        _vérifier_produit(uow, id_produit)
        lignes = uow.session.execute(
            text(
                "SELECT id, product_id, batch_number, quantity_original, quantity_remaining,"
                " expiry_date, received_date, cost_per_unit, supplier, status, created_at"
                " FROM batches WHERE product_id = :id_produit" + _ORDRE_FEFO
            ).columns(**_COLONNES_LOT),
            dict(id_produit=id_produit),
        ).all()
    résultat = []
    for ligne in lignes:
        statut_lot = _statut(ligne, aujourdhui, jours_alerte)
        if statut is None or statut_lot == statut:
            résultat.append(_lot_en_dict(ligne, statut_lot))
    return résultat


def lots_expirant(
    aujourdhui: date,
    jours: int,
    uow: unit_of_work.AbstractUnitOfWork,
    jours_alerte: int = 30,
) -> list[dict]:
    """
    Lots encore en stock dont l'expiration tombe dans les `jours` prochains jours.

    `jours` ne borne que la recherche : le statut affiché suit la fenêtre
    d'alerte habituelle, comme pour la liste des lots d'un produit.
    """
    with uow:
        lignes = uow.session.execute(
            text(
                "SELECT id, product_id, batch_number, quantity_original, quantity_remaining,"
                " expiry_date, received_date, cost_per_unit, supplier, status, created_at"
                " FROM batches"
                " WHERE quantity_remaining > 0 AND status != 'quarantined'"
                " AND expiry_date IS NOT NULL"
                " AND expiry_date >= :debut AND expiry_date <= :fin" + _ORDRE_FEFO
            )
            .bindparams(bindparam("debut", type_=Date), bindparam("fin", type_=Date))
            .columns(**_COLONNES_LOT),
            dict(debut=aujourdhui, fin=aujourdhui + timedelta(days=jours)),
        ).all()
    return [_lot_en_dict(ligne, _statut(ligne, aujourdhui, jours_alerte)) for ligne in lignes]


def historique_audit(
    id_produit: str,
    uow: unit_of_work.AbstractUnitOfWork,
) -> list[dict]:
    """Entrées d'audit d'un produit, de la plus récente à la plus ancienne."""
    with uow:
        _vérifier_produit(uow, id_produit)
        lignes = uow.session.execute(
            text(
                "SELECT id, batch_id, action, quantity_delta, quantity_before,"
                " quantity_after, reason, actor_id, reference_id, created_at"
                " FROM audit_entries WHERE product_id = :id_produit"
                " ORDER BY created_at DESC"
            ).columns(created_at=DateTime),
            dict(id_produit=id_produit),
        ).all()
    return [
        dict(
            id_entrée=l.id,
            id_lot=l.batch_id,
            action=l.action,
            delta=l.quantity_delta,
            quantité_avant=l.quantity_before,
            quantité_après=l.quantity_after,
            motif=l.reason,
            id_acteur=l.actor_id,
            id_référence=l.reference_id,
            horodatage=l.created_at.isoformat(),
        )
        for l in lignes
    ]


def analytique_lots(
    aujourdhui: date,
    uow: unit_of_work.AbstractUnitOfWork,
    jours_alerte: int = 30,
) -> dict:
    """
    Tableau de bord des lots : nombre de lots par statut, valeur du stock
    allouable, nombre de produits distincts, taille moyenne des lots actifs.
    """
    with uow:
        lignes = uow.session.execute(
            text(
                "SELECT product_id, quantity_remaining, expiry_date, cost_per_unit, status"
                " FROM batches"
            ).columns(expiry_date=Date, cost_per_unit=Numeric(12, 2))
        ).all()

    par_statut = {statut.value: 0 for statut in StatutLot}
    valeur = Decimal("0")
    quantités_actives = []
    for ligne in lignes:
        statut = _statut(ligne, aujourdhui, jours_alerte)
        par_statut[statut.value] += 1
        if statut != StatutLot.EN_QUARANTAINE:
            valeur += ligne.quantity_remaining * (ligne.cost_per_unit or Decimal("0"))
        if statut in (StatutLot.ACTIF, StatutLot.EXPIRATION_PROCHE):
            quantités_actives.append(ligne.quantity_remaining)

    return dict(
        total_lots=len(lignes),
        lots_par_statut=par_statut,
        valeur_totale=str(valeur),
        produits_distincts=len({ligne.product_id for ligne in lignes}),
        taille_moyenne=(
            round(sum(quantités_actives) / len(quantités_actives), 2)
            if quantités_actives else 0
        ),
    )


def produits_sous_seuil(uow: unit_of_work.AbstractUnitOfWork) -> list[dict]:
    """Produits actifs dont le stock total est au niveau ou sous le seuil de réapprovisionnement."""
    with uow:
        lignes = uow.session.execute(
            text(
                "SELECT id, name, total_stock, reorder_threshold FROM products"
                " WHERE is_active = :actif AND total_stock <= reorder_threshold"
                " ORDER BY total_stock, id"
            ),
            dict(actif=True),
        ).all()
    return [
        dict(
            id_produit=l.id,
            nom=l.name,
            stock_total=l.total_stock,
            seuil_réapprovisionnement=l.reorder_threshold,
        )
        for l in lignes
    ]
