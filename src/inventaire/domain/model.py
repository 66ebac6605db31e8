"""
Modèle de domaine de l'inventaire par lots.

Ce module contient les entités et value objects du domaine métier :
des lots de médicaments (Lot), regroupés au sein d'un agrégat Produit,
et les entrées du journal d'audit (EntréeAudit) produites à chaque
mouvement de quantité.

L'agrégat Produit est la frontière de cohérence : toute modification
de quantité d'un lot passe par lui, ce qui garantit que le stock total
dénormalisé est recalculé dans la même transaction que les lots.
"""

from __future__ import annotations

import enum
import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from inventaire.domain import events
from inventaire.domain.statut import StatutLot, classer_statut


# --- Exceptions ---


class ErreurInventaire(Exception):
    """Classe de base des erreurs métier de l'inventaire."""
    pass


class QuantitéInvalide(ErreurInventaire):
    """Levée pour une quantité non entière, nulle ou négative là où elle doit être positive."""
    pass


class QuantitéNégative(ErreurInventaire):
    """Levée quand on tente de fixer la quantité d'un lot en dessous de zéro."""
    pass


class ProduitIntrouvable(ErreurInventaire):
    """Levée quand le produit n'existe pas ou n'est plus actif."""
    pass


class LotIntrouvable(ErreurInventaire):
    pass


class NuméroLotDupliqué(ErreurInventaire):
    pass


class StockInsuffisant(ErreurInventaire):
    """
    Levée quand le stock allouable ne couvre pas la quantité demandée.

    La quantité disponible est transmise pour que l'appelant puisse
    proposer une vente partielle.
    """

    def __init__(self, id_produit: str, disponible: int, demandé: int):
        super().__init__(
            f"Stock insuffisant pour {id_produit} : disponible {disponible}, demandé {demandé}"
        )
        self.id_produit = id_produit
        self.disponible = disponible
        self.demandé = demandé


class ModificationConcurrente(ErreurInventaire):
    """
    Levée quand un lot a changé entre la planification et l'application.

    Le cœur ne réessaie jamais : l'appelant replanifie, car le nouveau
    plan peut toucher d'autres lots (et d'autres dates d'expiration).
    """

    def __init__(self, id_lot: str, disponible: Optional[int] = None, demandé: Optional[int] = None):
        super().__init__(f"Stock modifié pour le lot {id_lot}, veuillez réessayer")
        self.id_lot = id_lot
        self.disponible = disponible
        self.demandé = demandé


def valider_quantité(quantité: object, minimum: int = 1) -> int:
    """Vérifie qu'une quantité est un entier (bool exclu) supérieur ou égal à `minimum`."""
    if isinstance(quantité, bool) or not isinstance(quantité, int):
        raise QuantitéInvalide(f"Quantité non entière : {quantité!r}")
    if quantité < minimum:
        raise QuantitéInvalide(f"Quantité invalide : {quantité}")
    return quantité


# --- Journal d'audit ---


class TypeAction(str, enum.Enum):
    RÉCEPTION = "receipt"
    DÉDUCTION_VENTE = "sale-deduction"
    AJUSTEMENT_MANUEL = "manual-adjustment"
    QUARANTAINE = "quarantine"
    ANNULATION_VENTE = "sale-reversal"


class EntréeAudit:
    """
    Enregistrement immuable d'un mouvement de quantité.

    id_lot vaut None pour les lignes de synthèse au niveau produit.
    Une entrée `protégée` est retenue par un rapprochement en cours
    et échappe à la purge du journal.
    """

    def __init__(
        self,
        id_produit: str,
        id_lot: Optional[str],
        action: TypeAction,
        quantité_avant: int,
        quantité_après: int,
        horodatage: datetime,
        motif: str = "",
        id_acteur: Optional[str] = None,
        id_référence: Optional[str] = None,
        protégée: bool = False,
        id_entrée: Optional[str] = None,
    ):
        self.id_entrée = id_entrée or str(uuid.uuid4())
        self.id_produit = id_produit
        self.id_lot = id_lot
        self.action = action
        self.quantité_avant = quantité_avant
        self.quantité_après = quantité_après
        self.delta = quantité_après - quantité_avant
        self.motif = motif
        self.id_acteur = id_acteur
        self.id_référence = id_référence
        self.horodatage = horodatage
        self.protégée = protégée

    def __repr__(self) -> str:
        return f"<EntréeAudit {self.action.value} lot={self.id_lot} delta={self.delta}>"


# --- Allocation ---


@dataclass(frozen=True)
class LigneAllocation:
    id_lot: str
    quantité: int


@dataclass(frozen=True)
class PlanAllocation:
    """
    Plan de déduction calculé par l'allocateur FEFO.

    Structure transitoire, jamais persistée : la liste ordonnée des
    (lot, quantité) dont la somme égale la quantité demandée.
    """

    id_produit: str
    quantité_demandée: int
    lignes: tuple[LigneAllocation, ...]

    @property
    def total(self) -> int:
        return sum(ligne.quantité for ligne in self.lignes)


@dataclass(frozen=True)
class DéductionLot:
    id_lot: str
    numéro_lot: str
    quantité_déduite: int
    date_expiration: Optional[date]
    quantité_restante: int


@dataclass(frozen=True)
class RésultatAllocation:
    id_produit: str
    total_déduit: int
    nouveau_stock_total: int
    détail_lots: list[DéductionLot] = field(default_factory=list)


@dataclass(frozen=True)
class RésultatAjustement:
    id_lot: str
    quantité_avant: int
    quantité_après: int
    delta: int
    nouveau_stock_total: int


@dataclass(frozen=True)
class RésultatAnnulation:
    id_référence: str
    total_restitué: int
    stocks_totaux: dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class RésultatQuarantaine:
    mis_en_quarantaine: int
    échecs: int


@dataclass(frozen=True)
class RésultatMaintenance:
    mis_en_quarantaine: int
    purgées: int
    échecs: int


@dataclass(frozen=True)
class InstantanéLot:
    """Copie en lecture seule d'un lot, utilisable hors de la transaction."""

    id_lot: str
    id_produit: str
    numéro_lot: str
    quantité_originale: int
    quantité_restante: int
    date_expiration: Optional[date]
    statut: StatutLot


def générer_numéro_lot(jour: date, séquence: int) -> str:
    """Numéro lisible : BT + aammjj + '-' + séquence du jour sur 3 chiffres (BT251019-001)."""
    return f"BT{jour:%y%m%d}-{séquence:03d}"


# --- Entités ---


class Lot:
    """
    Entité représentant un lot reçu d'un produit.

    Un Lot a une identité (id_lot) et un cycle de vie : créé à la
    réception, décrémenté par les ventes et ajustements, épuisé à zéro,
    éventuellement mis en quarantaine. Il n'est jamais supprimé.

    Invariant : 0 <= quantité_restante <= quantité_originale.
    """

    def __init__(
        self,
        id_lot: str,
        id_produit: str,
        numéro_lot: str,
        quantité: int,
        date_expiration: Optional[date] = None,
        date_réception: Optional[date] = None,
        coût_unitaire: Optional[Decimal] = None,
        fournisseur: Optional[str] = None,
        créé_le: Optional[datetime] = None,
    ):
        self.id_lot = id_lot
        self.id_produit = id_produit
        self.numéro_lot = numéro_lot
        self.quantité_originale = quantité
        self.quantité_restante = quantité
        self.date_expiration = date_expiration
        self.date_réception = date_réception
        self.coût_unitaire = coût_unitaire
        self.fournisseur = fournisseur
        self.créé_le = créé_le
        self.statut = StatutLot.ÉPUISÉ if quantité == 0 else StatutLot.ACTIF

    def __repr__(self) -> str:
        return f"<Lot {self.numéro_lot}>"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Lot):
            return NotImplemented
        return self.id_lot == other.id_lot

    def __hash__(self) -> int:
        return hash(self.id_lot)

    def clé_fefo(self) -> tuple:
        """
        Clé de tri FEFO : expiration croissante (sans expiration en dernier),
        puis réception la plus ancienne, puis numéro de lot.
        """
        return (
            self.date_expiration is None,
            self.date_expiration or date.max,
            self.créé_le or datetime.min,
            self.numéro_lot,
        )

    @property
    def est_en_quarantaine(self) -> bool:
        return self.statut == StatutLot.EN_QUARANTAINE

    @property
    def est_allouable(self) -> bool:
        return self.quantité_restante > 0 and not self.est_en_quarantaine

    def statut_au(self, aujourdhui: date, jours_alerte: int = 30) -> StatutLot:
        if self.est_en_quarantaine:
            return StatutLot.EN_QUARANTAINE
        return classer_statut(
            self.quantité_restante, self.date_expiration, aujourdhui, jours_alerte
        )

    def instantané(self, aujourdhui: date) -> InstantanéLot:
        return InstantanéLot(
            id_lot=self.id_lot,
            id_produit=self.id_produit,
            numéro_lot=self.numéro_lot,
            quantité_originale=self.quantité_originale,
            quantité_restante=self.quantité_restante,
            date_expiration=self.date_expiration,
            statut=self.statut_au(aujourdhui),
        )

    def rafraîchir_statut(self, aujourdhui: date) -> None:
        """Met à jour le statut en cache ; la quarantaine n'est jamais levée ici."""
        self.statut = self.statut_au(aujourdhui)

    def modifier_quantité(self, nouvelle_quantité: int) -> None:
        """
        Primitive bas niveau : fixe la quantité restante.

        N'écrit aucune entrée d'audit, c'est la responsabilité de l'appelant.
        """
        if isinstance(nouvelle_quantité, bool) or not isinstance(nouvelle_quantité, int):
            raise QuantitéInvalide(f"Quantité non entière : {nouvelle_quantité!r}")
        if nouvelle_quantité < 0:
            raise QuantitéNégative(
                f"Quantité négative pour le lot {self.numéro_lot} : {nouvelle_quantité}"
            )
        if nouvelle_quantité > self.quantité_originale:
            raise QuantitéInvalide(
                f"Quantité {nouvelle_quantité} supérieure à la quantité reçue "
                f"({self.quantité_originale}) pour le lot {self.numéro_lot}"
            )
        self.quantité_restante = nouvelle_quantité

    def mettre_en_quarantaine(self) -> None:
        self.statut = StatutLot.EN_QUARANTAINE


class Produit:
    """
    Agrégat racine regroupant tous les lots d'un produit.

    Le stock_total est la somme des quantités restantes de tous les lots
    (quarantaine comprise : le stock est physiquement présent mais non
    allouable). Il est toujours recalculé à partir des lots, jamais
    modifié indépendamment.

    numéro_version est incrémenté par chaque opération qui modifie
    l'agrégat ; la couche de persistance s'en sert pour détecter
    les écritures concurrentes.
    """

    def __init__(
        self,
        id_produit: str,
        nom: str,
        seuil_réapprovisionnement: int = 0,
        actif: bool = True,
        lots: Optional[list[Lot]] = None,
        stock_total: Optional[int] = None,
        numéro_version: int = 0,
    ):
        self.id_produit = id_produit
        self.nom = nom
        self.seuil_réapprovisionnement = seuil_réapprovisionnement
        self.actif = actif
        self.lots = lots or []
        self.stock_total = (
            stock_total if stock_total is not None
            else sum(l.quantité_restante for l in self.lots)
        )
        self.numéro_version = numéro_version
        self.événements: list[events.Event] = []

    def __repr__(self) -> str:
        return f"<Produit {self.id_produit}>"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Produit):
            return NotImplemented
        return self.id_produit == other.id_produit

    def __hash__(self) -> int:
        return hash(self.id_produit)

    # --- Lecture ---

    def lot(self, id_lot: str) -> Lot:
        try:
            return next(l for l in self.lots if l.id_lot == id_lot)
        except StopIteration:
            raise LotIntrouvable(f"Lot inconnu : {id_lot}") from None

    def lots_triés(
        self,
        aujourdhui: Optional[date] = None,
        statut: Optional[StatutLot] = None,
        jours_alerte: int = 30,
    ) -> list[Lot]:
        """Lots dans l'ordre FEFO, éventuellement filtrés par statut au jour donné."""
        lots = sorted(self.lots, key=Lot.clé_fefo)
        if statut is None:
            return lots
        if aujourdhui is None:
            raise ValueError("Un filtre de statut nécessite la date du jour")
        return [l for l in lots if l.statut_au(aujourdhui, jours_alerte) == statut]

    @property
    def stock_disponible(self) -> int:
        """Quantité allouable : lots non vides et hors quarantaine."""
        return sum(l.quantité_restante for l in self.lots if l.est_allouable)

    def recalculer_stock_total(self) -> int:
        self.stock_total = sum(l.quantité_restante for l in self.lots)
        return self.stock_total

    # --- Mutations ---

    def _après_mutation(self, ancien_total: int) -> None:
        self.numéro_version += 1
        seuil = self.seuil_réapprovisionnement
        # Un seuil nul signifie « pas de suivi de réapprovisionnement »
        if seuil and ancien_total > seuil >= self.stock_total:
            self.événements.append(
                events.SeuilRéapprovisionnementAtteint(
                    id_produit=self.id_produit,
                    stock_total=self.stock_total,
                    seuil=seuil,
                )
            )

    def recevoir_lot(self, lot: Lot, horodatage: datetime, id_acteur: Optional[str] = None) -> EntréeAudit:
        """Ajoute un lot reçu et retourne l'entrée d'audit de réception."""
        if not self.actif:
            raise ProduitIntrouvable(f"Produit inactif : {self.id_produit}")
        valider_quantité(lot.quantité_originale)
        if any(l.numéro_lot == lot.numéro_lot for l in self.lots):
            raise NuméroLotDupliqué(f"Numéro de lot déjà utilisé : {lot.numéro_lot}")

        ancien_total = self.stock_total
        lot.rafraîchir_statut(horodatage.date())
        self.lots.append(lot)
        self.recalculer_stock_total()
        self._après_mutation(ancien_total)
        self.événements.append(
            events.LotReçu(
                id_produit=self.id_produit,
                id_lot=lot.id_lot,
                numéro_lot=lot.numéro_lot,
                quantité=lot.quantité_originale,
            )
        )
        return EntréeAudit(
            id_produit=self.id_produit,
            id_lot=lot.id_lot,
            action=TypeAction.RÉCEPTION,
            quantité_avant=0,
            quantité_après=lot.quantité_originale,
            horodatage=horodatage,
            motif=f"Réception du lot {lot.numéro_lot}",
            id_acteur=id_acteur,
        )

    def appliquer_plan(
        self,
        plan: PlanAllocation,
        horodatage: datetime,
        id_référence: Optional[str] = None,
        id_acteur: Optional[str] = None,
    ) -> tuple[RésultatAllocation, list[EntréeAudit]]:
        """
        Applique un plan d'allocation FEFO à l'agrégat.

        Toutes les lignes sont revalidées contre les quantités actuelles
        avant la moindre mutation : si un lot a été entamé (ou mis en
        quarantaine) depuis la planification, ModificationConcurrente est
        levée et aucun lot n'est modifié.

        Retourne le résultat (avec le détail par lot, nécessaire au ticket
        de caisse) et les entrées d'audit à enregistrer : une par lot,
        puis une ligne de synthèse sans lot.
        """
        if plan.id_produit != self.id_produit:
            raise ValueError(f"Plan pour {plan.id_produit} appliqué à {self.id_produit}")
        valider_quantité(plan.quantité_demandée)
        if plan.total != plan.quantité_demandée:
            raise QuantitéInvalide(
                f"Plan incohérent : {plan.total} planifiés pour {plan.quantité_demandée} demandés"
            )

        demandes = Counter()
        for ligne in plan.lignes:
            valider_quantité(ligne.quantité)
            demandes[ligne.id_lot] += ligne.quantité
        for id_lot, quantité in demandes.items():
            lot = self.lot(id_lot)
            if lot.est_en_quarantaine or lot.quantité_restante < quantité:
                raise ModificationConcurrente(
                    id_lot,
                    disponible=0 if lot.est_en_quarantaine else lot.quantité_restante,
                    demandé=quantité,
                )

        aujourdhui = horodatage.date()
        ancien_total = self.stock_total
        entrées: list[EntréeAudit] = []
        détail: list[DéductionLot] = []
        for ligne in plan.lignes:
            lot = self.lot(ligne.id_lot)
            avant = lot.quantité_restante
            lot.modifier_quantité(avant - ligne.quantité)
            lot.rafraîchir_statut(aujourdhui)
            entrées.append(
                EntréeAudit(
                    id_produit=self.id_produit,
                    id_lot=lot.id_lot,
                    action=TypeAction.DÉDUCTION_VENTE,
                    quantité_avant=avant,
                    quantité_après=lot.quantité_restante,
                    horodatage=horodatage,
                    motif=f"Vente FEFO sur le lot {lot.numéro_lot}",
                    id_acteur=id_acteur,
                    id_référence=id_référence,
                )
            )
            détail.append(
                DéductionLot(
                    id_lot=lot.id_lot,
                    numéro_lot=lot.numéro_lot,
                    quantité_déduite=ligne.quantité,
                    date_expiration=lot.date_expiration,
                    quantité_restante=lot.quantité_restante,
                )
            )
            if lot.quantité_restante == 0:
                self.événements.append(
                    events.LotÉpuisé(id_produit=self.id_produit, id_lot=lot.id_lot)
                )

        nouveau_total = self.recalculer_stock_total()
        entrées.append(
            EntréeAudit(
                id_produit=self.id_produit,
                id_lot=None,
                action=TypeAction.DÉDUCTION_VENTE,
                quantité_avant=ancien_total,
                quantité_après=nouveau_total,
                horodatage=horodatage,
                motif=f"Vente FEFO terminée : {len(détail)} lot(s) touché(s)",
                id_acteur=id_acteur,
                id_référence=id_référence,
            )
        )
        self._après_mutation(ancien_total)
        résultat = RésultatAllocation(
            id_produit=self.id_produit,
            total_déduit=plan.total,
            nouveau_stock_total=nouveau_total,
            détail_lots=détail,
        )
        return résultat, entrées

    def ajuster_lot(
        self,
        id_lot: str,
        nouvelle_quantité: int,
        motif: str,
        horodatage: datetime,
        id_acteur: Optional[str] = None,
    ) -> tuple[RésultatAjustement, EntréeAudit]:
        """Ajustement manuel (inventaire physique, casse...) d'un seul lot."""
        lot = self.lot(id_lot)
        ancien_total = self.stock_total
        avant = lot.quantité_restante
        lot.modifier_quantité(nouvelle_quantité)
        lot.rafraîchir_statut(horodatage.date())
        nouveau_total = self.recalculer_stock_total()
        self._après_mutation(ancien_total)
        if avant > 0 and lot.quantité_restante == 0:
            self.événements.append(events.LotÉpuisé(id_produit=self.id_produit, id_lot=id_lot))
        entrée = EntréeAudit(
            id_produit=self.id_produit,
            id_lot=id_lot,
            action=TypeAction.AJUSTEMENT_MANUEL,
            quantité_avant=avant,
            quantité_après=lot.quantité_restante,
            horodatage=horodatage,
            motif=motif,
            id_acteur=id_acteur,
        )
        résultat = RésultatAjustement(
            id_lot=id_lot,
            quantité_avant=avant,
            quantité_après=lot.quantité_restante,
            delta=entrée.delta,
            nouveau_stock_total=nouveau_total,
        )
        return résultat, entrée

    def mettre_lot_en_quarantaine(
        self,
        id_lot: str,
        horodatage: datetime,
        motif: str = "expired",
        id_acteur: Optional[str] = None,
    ) -> Optional[EntréeAudit]:
        """
        Exclut un lot de l'allocation FEFO.

        Retourne None si le lot est déjà en quarantaine (idempotence).
        La quantité n'est pas modifiée : le delta d'audit est nul.
        """
        lot = self.lot(id_lot)
        if lot.est_en_quarantaine:
            return None
        lot.mettre_en_quarantaine()
        self._après_mutation(self.stock_total)
        self.événements.append(
            events.LotMisEnQuarantaine(
                id_produit=self.id_produit,
                id_lot=id_lot,
                numéro_lot=lot.numéro_lot,
                quantité=lot.quantité_restante,
            )
        )
        return EntréeAudit(
            id_produit=self.id_produit,
            id_lot=id_lot,
            action=TypeAction.QUARANTAINE,
            quantité_avant=lot.quantité_restante,
            quantité_après=lot.quantité_restante,
            horodatage=horodatage,
            motif=motif,
            id_acteur=id_acteur,
        )

    def restituer(
        self,
        restitutions: list[LigneAllocation],
        horodatage: datetime,
        id_référence: str,
        id_acteur: Optional[str] = None,
        motif: str = "",
    ) -> tuple[int, list[EntréeAudit]]:
        """
        Remet en stock les quantités d'une vente annulée, lot par lot.

        La restitution est plafonnée à la quantité reçue du lot : un lot
        ajusté à la hausse entre-temps ne peut pas dépasser son original.
        """
        aujourdhui = horodatage.date()
        ancien_total = self.stock_total
        entrées: list[EntréeAudit] = []
        total = 0
        for ligne in restitutions:
            lot = self.lot(ligne.id_lot)
            avant = lot.quantité_restante
            quantité = min(ligne.quantité, lot.quantité_originale - avant)
            if quantité <= 0:
                continue
            lot.modifier_quantité(avant + quantité)
            lot.rafraîchir_statut(aujourdhui)
            total += quantité
            entrées.append(
                EntréeAudit(
                    id_produit=self.id_produit,
                    id_lot=lot.id_lot,
                    action=TypeAction.ANNULATION_VENTE,
                    quantité_avant=avant,
                    quantité_après=lot.quantité_restante,
                    horodatage=horodatage,
                    motif=motif or f"Annulation de la vente {id_référence}",
                    id_acteur=id_acteur,
                    id_référence=id_référence,
                )
            )
        nouveau_total = self.recalculer_stock_total()
        entrées.append(
            EntréeAudit(
                id_produit=self.id_produit,
                id_lot=None,
                action=TypeAction.ANNULATION_VENTE,
                quantité_avant=ancien_total,
                quantité_après=nouveau_total,
                horodatage=horodatage,
                motif=motif or f"Annulation de la vente {id_référence}",
                id_acteur=id_acteur,
                id_référence=id_référence,
            )
        )
        self._après_mutation(ancien_total)
        return total, entrées
