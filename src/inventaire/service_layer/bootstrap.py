"""
Bootstrap : assemblage de l'application (Composition Root).

Ce module construit le message bus avec toutes ses dépendances.
C'est ici que l'injection de dépendances est réalisée :
on assemble les composants concrets (ou les fakes pour les tests).

C'est le seul endroit de l'application qui connaît les
implémentations concrètes de chaque abstraction.
"""

from __future__ import annotations

from typing import Any

from inventaire import config
from inventaire.adapters import horloge as horloge_module
from inventaire.adapters import notifications, orm
from inventaire.domain import commands, events
from inventaire.service_layer import handlers, messagebus, unit_of_work


def bootstrap(
    start_orm: bool = True,
    uow: unit_of_work.AbstractUnitOfWork | None = None,
    notifications_adapter: notifications.AbstractNotifications | None = None,
    horloge: horloge_module.AbstractHorloge | None = None,
    **extra_dependencies: Any,
) -> messagebus.MessageBus:
    """
    Construit et retourne un MessageBus configuré.

    En production, utilise les implémentations concrètes.
    En test, on injecte des fakes via les paramètres.
    """
    if start_orm:
        orm.start_mappers()

    if uow is None:
        uow = unit_of_work.SqlAlchemyUnitOfWork()

    if notifications_adapter is None:
        notifications_adapter = notifications.EmailNotifications()

    if horloge is None:
        horloge = horloge_module.HorlogeSystème()

    dependencies: dict[str, Any] = {
        "notifications": notifications_adapter,
        "horloge": horloge,
        "plancher_rétention": config.get_plancher_rétention_audit(),
        **extra_dependencies,
    }

    return messagebus.MessageBus(
        uow=uow,
        event_handlers=EVENT_HANDLERS,
        command_handlers=COMMAND_HANDLERS,
        dependencies=dependencies,
    )


# --- Routage des messages vers les handlers ---

EVENT_HANDLERS: dict[type[events.Event], list] = {
    events.LotReçu: [handlers.journaliser_réception],
    events.LotÉpuisé: [handlers.journaliser_lot_épuisé],
    events.LotMisEnQuarantaine: [handlers.envoyer_alerte_quarantaine],
    events.SeuilRéapprovisionnementAtteint: [handlers.envoyer_alerte_réapprovisionnement],
}

COMMAND_HANDLERS: dict[type[commands.Command], Any] = {
    commands.EnregistrerProduit: handlers.enregistrer_produit,
    commands.RecevoirLot: handlers.recevoir_lot,
    commands.PlanifierAllocation: handlers.planifier_allocation,
    commands.AppliquerAllocation: handlers.appliquer_allocation,
    commands.AjusterLot: handlers.ajuster_lot,
    commands.AnnulerVente: handlers.annuler_vente,
    commands.MettreEnQuarantaineLotsExpirés: handlers.mettre_en_quarantaine_lots_expirés,
    commands.PurgerJournalAudit: handlers.purger_journal_audit,
    commands.ExécuterMaintenance: handlers.exécuter_maintenance,
}
