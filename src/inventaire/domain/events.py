"""
Events du domaine.

Les events représentent des faits qui se sont produits dans le système.
Ils sont immuables et nommés au passé (quelque chose s'est passé).
"""

from dataclasses import dataclass


class Event:
    """Classe de base pour tous les events du domaine."""
    pass


@dataclass(frozen=True)
class LotReçu(Event):
    id_produit: str
    id_lot: str
    numéro_lot: str
    quantité: int


@dataclass(frozen=True)
class LotÉpuisé(Event):
    """La quantité restante d'un lot est tombée à zéro."""

    id_produit: str
    id_lot: str


@dataclass(frozen=True)
class LotMisEnQuarantaine(Event):
    """Un lot a été exclu de l'allocation (en général parce qu'il a expiré)."""

    id_produit: str
    id_lot: str
    numéro_lot: str
    quantité: int


@dataclass(frozen=True)
class SeuilRéapprovisionnementAtteint(Event):
    """Le stock total d'un produit vient de passer sous son seuil de réapprovisionnement."""

    id_produit: str
    stock_total: int
    seuil: int
