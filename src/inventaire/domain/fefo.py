"""
Allocateur FEFO (First-Expired-First-Out).

Calcule, sans rien modifier, le plan de déduction qui satisfait une
quantité demandée en consommant d'abord les lots qui expirent le plus
tôt. La planification est en lecture seule : elle peut tourner en
parallèle sans verrou, la revalidation a lieu à l'application du plan.
"""

from __future__ import annotations

from typing import Iterable

from inventaire.domain.model import (
    LigneAllocation,
    Lot,
    PlanAllocation,
    StockInsuffisant,
    valider_quantité,
)


def lots_éligibles(lots: Iterable[Lot]) -> list[Lot]:
    """Lots non vides, hors quarantaine, dans l'ordre FEFO."""
    return sorted((l for l in lots if l.est_allouable), key=Lot.clé_fefo)


def planifier(id_produit: str, lots: Iterable[Lot], quantité: int) -> PlanAllocation:
    """
    Produit un plan d'allocation ou échoue.

    Tout ou rien : si la somme des lots éligibles ne couvre pas la
    demande, StockInsuffisant est levée avec la quantité disponible
    et aucun plan partiel n'est produit.
    """
    valider_quantité(quantité)
    éligibles = lots_éligibles(lots)
    disponible = sum(l.quantité_restante for l in éligibles)
    if disponible < quantité:
        raise StockInsuffisant(id_produit, disponible=disponible, demandé=quantité)

    reste = quantité
    lignes: list[LigneAllocation] = []
    for lot in éligibles:
        if reste == 0:
            break
        prise = min(lot.quantité_restante, reste)
        lignes.append(LigneAllocation(id_lot=lot.id_lot, quantité=prise))
        reste -= prise

    return PlanAllocation(
        id_produit=id_produit,
        quantité_demandée=quantité,
        lignes=tuple(lignes),
    )
