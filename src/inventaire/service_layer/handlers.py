"""
Handlers pour les commands et events.

Les handlers sont les fonctions qui traitent les commands et events
transitant par le message bus.

- Command handlers : exécutent une action (peuvent échouer)
- Event handlers : réagissent à un fait passé (ne doivent pas échouer)

Les command handlers de vente, d'ajustement et d'annulation forment
le processeur de transactions : chacun ouvre une seule unité de
travail, fait muter l'agrégat Produit, enregistre les entrées d'audit
et valide le tout ensemble. La maintenance ouvre une transaction par
lot pour qu'un échec isolé n'interrompe pas le balayage.
"""

from __future__ import annotations

import logging
import uuid
from datetime import timedelta
from typing import TYPE_CHECKING

from inventaire import config
from inventaire.domain import commands, events, fefo, model
from inventaire.service_layer.unit_of_work import ConflitDeVersion

if TYPE_CHECKING:
    from inventaire.adapters.horloge import AbstractHorloge
    from inventaire.adapters.notifications import AbstractNotifications
    from inventaire.service_layer.unit_of_work import AbstractUnitOfWork

logger = logging.getLogger(__name__)

MOTIF_EXPIRATION = "expired"


# --- Exceptions ---


class VenteIntrouvable(Exception):
    """Levée quand aucune déduction n'est enregistrée pour la référence de vente."""
    pass


class VenteDéjàAnnulée(Exception):
    pass


def _commit_ou_conflit(uow: AbstractUnitOfWork, id_lot: str) -> None:
    """
    Valide la transaction ; un conflit de version devient ModificationConcurrente.

    Aucune nouvelle tentative automatique : l'appelant replanifie.
    """
    try:
        uow.commit()
    except ConflitDeVersion as e:
        logger.warning("Écriture concurrente détectée sur le lot %s", id_lot)
        raise model.ModificationConcurrente(id_lot) from e


def _get_produit_actif(uow: AbstractUnitOfWork, id_produit: str) -> model.Produit:
    produit = uow.produits.get(id_produit=id_produit)
    if produit is None or not produit.actif:
        raise model.ProduitIntrouvable(f"Produit inconnu ou inactif : {id_produit}")
    return produit


# --- Command Handlers ---


def enregistrer_produit(
    cmd: commands.EnregistrerProduit,
    uow: AbstractUnitOfWork,
) -> None:
    """
    Enregistre (ou met à jour) l'identité d'un produit du catalogue.

    Le catalogue reste propriétaire du produit : seuls le nom, le seuil
    et l'état actif sont repris ici. Le stock total n'est jamais fixé
    par cette voie.
    """
    model.valider_quantité(cmd.seuil_réapprovisionnement, minimum=0)
    with uow:
        produit = uow.produits.get(id_produit=cmd.id_produit)
        if produit is None:
            uow.produits.add(
                model.Produit(
                    id_produit=cmd.id_produit,
                    nom=cmd.nom,
                    seuil_réapprovisionnement=cmd.seuil_réapprovisionnement,
                    actif=cmd.actif,
                )
            )
        else:
            produit.nom = cmd.nom
            produit.seuil_réapprovisionnement = cmd.seuil_réapprovisionnement
            produit.actif = cmd.actif
            produit.numéro_version += 1
        uow.commit()


def recevoir_lot(
    cmd: commands.RecevoirLot,
    uow: AbstractUnitOfWork,
    horloge: AbstractHorloge,
) -> model.InstantanéLot:
    """
    Entrée en stock d'un nouveau lot.

    Si aucun numéro n'est fourni, il est tiré de la séquence du jour ;
    un numéro déjà pris (saisi à la main un autre jour, par exemple)
    fait simplement avancer la séquence.
    """
    model.valider_quantité(cmd.quantité)
    maintenant = horloge.maintenant()
    aujourdhui = maintenant.date()
    with uow:
        produit = _get_produit_actif(uow, cmd.id_produit)
        numéro = cmd.numéro_lot
        if numéro is None:
            numéro = model.générer_numéro_lot(aujourdhui, uow.numéros_lot.suivant(aujourdhui))
            while uow.produits.numéro_lot_existe(numéro):
                numéro = model.générer_numéro_lot(aujourdhui, uow.numéros_lot.suivant(aujourdhui))
        elif uow.produits.numéro_lot_existe(numéro):
            raise model.NuméroLotDupliqué(f"Numéro de lot déjà utilisé : {numéro}")

        lot = model.Lot(
            id_lot=str(uuid.uuid4()),
            id_produit=produit.id_produit,
            numéro_lot=numéro,
            quantité=cmd.quantité,
            date_expiration=cmd.date_expiration,
            date_réception=aujourdhui,
            coût_unitaire=cmd.coût_unitaire,
            fournisseur=cmd.fournisseur,
            créé_le=maintenant,
        )
        uow.audit.add(produit.recevoir_lot(lot, maintenant, id_acteur=cmd.id_acteur))
        instantané = lot.instantané(aujourdhui)
        _commit_ou_conflit(uow, lot.id_lot)
    logger.info(
        "Lot %s reçu pour %s (quantité: %d)",
        instantané.numéro_lot, cmd.id_produit, cmd.quantité,
    )
    return instantané


def planifier_allocation(
    cmd: commands.PlanifierAllocation,
    uow: AbstractUnitOfWork,
) -> model.PlanAllocation:
    """
    Calcule un plan FEFO sans rien écrire.

    La transaction n'est jamais validée : la planification ne pose
    aucun verrou et peut tourner en parallèle d'autres ventes.
    """
    model.valider_quantité(cmd.quantité)
    with uow:
        produit = _get_produit_actif(uow, cmd.id_produit)
        return fefo.planifier(produit.id_produit, produit.lots, cmd.quantité)


def appliquer_allocation(
    cmd: commands.AppliquerAllocation,
    uow: AbstractUnitOfWork,
    horloge: AbstractHorloge,
) -> model.RésultatAllocation:
    """
    Applique un plan d'allocation en une seule transaction.

    Soit tous les lots du plan sont décrémentés, toutes les entrées
    d'audit écrites et le stock total mis à jour, soit rien ne l'est.
    """
    plan = cmd.plan
    if not plan.lignes:
        raise model.QuantitéInvalide("Plan d'allocation vide")
    with uow:
        produit = _get_produit_actif(uow, plan.id_produit)
        résultat, entrées = produit.appliquer_plan(
            plan,
            horloge.maintenant(),
            id_référence=cmd.id_référence,
            id_acteur=cmd.id_acteur,
        )
        for entrée in entrées:
            uow.audit.add(entrée)
        _commit_ou_conflit(uow, plan.lignes[0].id_lot)
    logger.info(
        "Vente %s : %d unité(s) de %s sur %d lot(s), stock restant %d",
        cmd.id_référence, résultat.total_déduit, plan.id_produit,
        len(résultat.détail_lots), résultat.nouveau_stock_total,
    )
    return résultat


def ajuster_lot(
    cmd: commands.AjusterLot,
    uow: AbstractUnitOfWork,
    horloge: AbstractHorloge,
) -> model.RésultatAjustement:
    with uow:
        produit = uow.produits.get_par_id_lot(id_lot=cmd.id_lot)
        if produit is None:
            raise model.LotIntrouvable(f"Lot inconnu : {cmd.id_lot}")
        résultat, entrée = produit.ajuster_lot(
            cmd.id_lot,
            cmd.nouvelle_quantité,
            cmd.motif,
            horloge.maintenant(),
            id_acteur=cmd.id_acteur,
        )
        uow.audit.add(entrée)
        _commit_ou_conflit(uow, cmd.id_lot)
    logger.info(
        "Lot %s ajusté de %d à %d (%s)",
        cmd.id_lot, résultat.quantité_avant, résultat.quantité_après, cmd.motif,
    )
    return résultat


def annuler_vente(
    cmd: commands.AnnulerVente,
    uow: AbstractUnitOfWork,
    horloge: AbstractHorloge,
) -> model.RésultatAnnulation:
    """
    Remet en stock, lot par lot, ce qu'une vente a déduit.

    Les lots à créditer sont retrouvés dans le journal d'audit
    grâce à la référence de la vente.
    """
    maintenant = horloge.maintenant()
    with uow:
        entrées = uow.audit.lister(id_référence=cmd.id_référence)
        if any(e.action == model.TypeAction.ANNULATION_VENTE for e in entrées):
            raise VenteDéjàAnnulée(f"Vente déjà annulée : {cmd.id_référence}")
        déductions = [
            e for e in entrées
            if e.action == model.TypeAction.DÉDUCTION_VENTE and e.id_lot is not None
        ]
        if not déductions:
            raise VenteIntrouvable(f"Vente inconnue : {cmd.id_référence}")

        par_produit: dict[str, list[model.LigneAllocation]] = {}
        for e in déductions:
            par_produit.setdefault(e.id_produit, []).append(
                model.LigneAllocation(id_lot=e.id_lot, quantité=-e.delta)
            )

        # Tous les produits (et leurs lots) sont chargés avant la première
        # mutation : aucun chargement ne peut déclencher un flush partiel.
        produits: dict[str, model.Produit] = {}
        for id_produit, lignes in par_produit.items():
            produit = uow.produits.get(id_produit=id_produit)
            if produit is None:
                raise model.ProduitIntrouvable(f"Produit inconnu : {id_produit}")
            for ligne in lignes:
                produit.lot(ligne.id_lot)
            produits[id_produit] = produit

        total = 0
        stocks_totaux: dict[str, int] = {}
        for id_produit, lignes in par_produit.items():
            produit = produits[id_produit]
            restitué, nouvelles = produit.restituer(
                lignes,
                maintenant,
                id_référence=cmd.id_référence,
                id_acteur=cmd.id_acteur,
                motif=cmd.motif,
            )
            for entrée in nouvelles:
                uow.audit.add(entrée)
            total += restitué
            stocks_totaux[id_produit] = produit.stock_total
        _commit_ou_conflit(uow, déductions[0].id_lot)
    logger.info("Vente %s annulée : %d unité(s) restituée(s)", cmd.id_référence, total)
    return model.RésultatAnnulation(
        id_référence=cmd.id_référence,
        total_restitué=total,
        stocks_totaux=stocks_totaux,
    )


def mettre_en_quarantaine_lots_expirés(
    cmd: commands.MettreEnQuarantaineLotsExpirés,
    uow: AbstractUnitOfWork,
    horloge: AbstractHorloge,
) -> model.RésultatQuarantaine:
    """
    Met en quarantaine tous les lots expirés encore en stock.

    Une transaction par lot : l'échec d'un lot est journalisé et compté,
    le balayage continue avec les suivants. Idempotent, un second
    passage ne trouve plus de candidat.
    """
    aujourdhui = horloge.aujourdhui()
    with uow:
        candidats = uow.produits.ids_lots_à_mettre_en_quarantaine(aujourdhui)

    mis_en_quarantaine = 0
    échecs = 0
    for id_lot in candidats:
        try:
            with uow:
                produit = uow.produits.get_par_id_lot(id_lot=id_lot)
                if produit is None:
                    raise model.LotIntrouvable(f"Lot inconnu : {id_lot}")
                entrée = produit.mettre_lot_en_quarantaine(
                    id_lot, horloge.maintenant(), motif=MOTIF_EXPIRATION
                )
                if entrée is None:
                    continue
                uow.audit.add(entrée)
                _commit_ou_conflit(uow, id_lot)
            mis_en_quarantaine += 1
        except Exception:
            logger.exception("Échec de la mise en quarantaine du lot %s", id_lot)
            échecs += 1

    logger.info(
        "Quarantaine : %d lot(s) traité(s), %d échec(s)", mis_en_quarantaine, échecs
    )
    return model.RésultatQuarantaine(mis_en_quarantaine=mis_en_quarantaine, échecs=échecs)


def purger_journal_audit(
    cmd: commands.PurgerJournalAudit,
    uow: AbstractUnitOfWork,
    horloge: AbstractHorloge,
    plancher_rétention: int = 90,
) -> int:
    """
    Supprime les entrées d'audit plus anciennes que la rétention.

    La rétention effective ne descend jamais sous le plancher de
    protection, et les entrées protégées (rapprochement en cours)
    sont toujours conservées.
    """
    if cmd.jours_rétention < 0:
        raise ValueError(f"Rétention négative : {cmd.jours_rétention}")
    jours = max(cmd.jours_rétention, plancher_rétention)
    limite = horloge.maintenant() - timedelta(days=jours)
    with uow:
        purgées = uow.audit.purger(avant=limite)
        uow.commit()
    logger.info("Journal d'audit : %d entrée(s) antérieure(s) au %s purgée(s)", purgées, limite)
    return purgées


def exécuter_maintenance(
    cmd: commands.ExécuterMaintenance,
    uow: AbstractUnitOfWork,
    horloge: AbstractHorloge,
    plancher_rétention: int = 90,
) -> model.RésultatMaintenance:
    quarantaine = mettre_en_quarantaine_lots_expirés(
        commands.MettreEnQuarantaineLotsExpirés(), uow=uow, horloge=horloge
    )
    jours = cmd.jours_rétention
    if jours is None:
        jours = config.get_jours_rétention_audit()
    purgées = purger_journal_audit(
        commands.PurgerJournalAudit(jours_rétention=jours),
        uow=uow,
        horloge=horloge,
        plancher_rétention=plancher_rétention,
    )
    return model.RésultatMaintenance(
        mis_en_quarantaine=quarantaine.mis_en_quarantaine,
        purgées=purgées,
        échecs=quarantaine.échecs,
    )


# --- Event Handlers ---


def journaliser_réception(
    event: events.LotReçu,
) -> None:
    logger.debug("Lot reçu : %s (%s, quantité: %d)", event.numéro_lot, event.id_produit, event.quantité)


def journaliser_lot_épuisé(
    event: events.LotÉpuisé,
) -> None:
    logger.info("Lot %s épuisé pour le produit %s", event.id_lot, event.id_produit)


def envoyer_alerte_réapprovisionnement(
    event: events.SeuilRéapprovisionnementAtteint,
    notifications: AbstractNotifications,
) -> None:
    """Prévient la pharmacie qu'un produit doit être recommandé."""
    notifications.send(
        destination=config.get_email_alertes(),
        message=(
            f"Stock bas pour le produit {event.id_produit} : "
            f"{event.stock_total} unité(s), seuil {event.seuil}"
        ),
    )


def envoyer_alerte_quarantaine(
    event: events.LotMisEnQuarantaine,
    notifications: AbstractNotifications,
) -> None:
    notifications.send(
        destination=config.get_email_alertes(),
        message=(
            f"Lot {event.numéro_lot} du produit {event.id_produit} mis en quarantaine "
            f"({event.quantité} unité(s) à retirer)"
        ),
    )
