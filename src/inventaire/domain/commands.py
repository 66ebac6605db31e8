"""
Commands du domaine.

Les commands représentent des intentions : quelque chose que
le système doit faire. Contrairement aux events (faits passés),
les commands sont des demandes qui peuvent échouer.
"""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Optional

from inventaire.domain.model import PlanAllocation


class Command:
    """Classe de base pour toutes les commands."""
    pass


@dataclass(frozen=True)
class EnregistrerProduit(Command):
    """Enregistre un produit du catalogue auprès de l'inventaire."""

    id_produit: str
    nom: str
    seuil_réapprovisionnement: int = 0
    actif: bool = True


@dataclass(frozen=True)
class RecevoirLot(Command):
    """Réception (entrée en stock) d'un nouveau lot."""

    id_produit: str
    quantité: int
    date_expiration: Optional[date] = None
    numéro_lot: Optional[str] = None
    coût_unitaire: Optional[Decimal] = None
    fournisseur: Optional[str] = None
    id_acteur: Optional[str] = None


@dataclass(frozen=True)
class PlanifierAllocation(Command):
    """Calcule un plan FEFO sans rien modifier."""

    id_produit: str
    quantité: int


@dataclass(frozen=True)
class AppliquerAllocation(Command):
    """Applique atomiquement un plan d'allocation (vente)."""

    plan: PlanAllocation
    id_référence: Optional[str] = None
    id_acteur: Optional[str] = None


@dataclass(frozen=True)
class AjusterLot(Command):
    """Fixe manuellement la quantité restante d'un lot."""

    id_lot: str
    nouvelle_quantité: int
    motif: str
    id_acteur: Optional[str] = None


@dataclass(frozen=True)
class AnnulerVente(Command):
    """Remet en stock les lots déduits par une vente."""

    id_référence: str
    id_acteur: Optional[str] = None
    motif: str = ""


@dataclass(frozen=True)
class MettreEnQuarantaineLotsExpirés(Command):
    pass


@dataclass(frozen=True)
class PurgerJournalAudit(Command):
    jours_rétention: int


@dataclass(frozen=True)
class ExécuterMaintenance(Command):
    """Quarantaine des lots expirés puis purge du journal d'audit."""

    jours_rétention: Optional[int] = None
