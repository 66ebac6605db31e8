"""
Aiguillage des commands et des events de l'inventaire.

Une command (réception, vente, ajustement, maintenance...) est confiée à
son unique handler, dont le résultat est rendu à l'appelant HTTP ; les
erreurs métier comme StockInsuffisant ou ModificationConcurrente
remontent telles quelles.

Les events (lot épuisé, seuil franchi, quarantaine) ne sont publiés
qu'une fois la transaction validée. Leurs handlers sont des effets de
bord (journalisation, alertes) : un échec d'alerte est journalisé mais
n'annule jamais la vente qui l'a provoquée.
"""

from __future__ import annotations

import inspect
import logging
from typing import Any, Callable, Union

from inventaire.domain import commands, events
from inventaire.service_layer import unit_of_work

logger = logging.getLogger(__name__)

Message = Union[commands.Command, events.Event]


class MessageBus:
    """
    Bus de l'inventaire.

    `dependencies` associe un nom de paramètre à l'objet à injecter
    (horloge, notifications, plancher_rétention...). `uow` est toujours
    fourni.
    """

    def __init__(
        self,
        uow: unit_of_work.AbstractUnitOfWork,
        event_handlers: dict[type[events.Event], list[Callable]],
        command_handlers: dict[type[commands.Command], Callable],
        dependencies: dict[str, Any] | None = None,
    ):
        self.uow = uow
        self.event_handlers = event_handlers
        self.command_handlers = command_handlers
        self.dependencies = dependencies or {}
        self.queue: list[Message] = []

    def handle(self, message: Message) -> list[Any]:
        """
        Exécute `message` puis les events validés qu'il a produits.

        Le premier élément de la liste retournée est le résultat de la
        command d'origine (plan, résultat de vente, instantané de lot...).
        """
        self.queue = [message]
        results: list[Any] = []
        while self.queue:
            suivant = self.queue.pop(0)
            if isinstance(suivant, commands.Command):
                results.append(self._exécuter_command(suivant))
            elif isinstance(suivant, events.Event):
                self._publier_event(suivant)
            else:
                raise ValueError(f"Message de type inconnu : {type(suivant)}")
        return results

    def _exécuter_command(self, command: commands.Command) -> Any:
        handler = self.command_handlers.get(type(command))
        if handler is None:
            raise ValueError(f"Aucun handler pour la command {type(command).__name__}")
        logger.debug("Command %s -> %s", command, handler.__name__)
        résultat = self._appeler(handler, command)
        self.queue.extend(self.uow.collect_new_events())
        return résultat

    def _publier_event(self, event: events.Event) -> None:
        for handler in self.event_handlers.get(type(event), []):
            try:
                logger.debug("Event %s -> %s", event, handler.__name__)
                self._appeler(handler, event)
                self.queue.extend(self.uow.collect_new_events())
            except Exception:
                logger.exception("Échec du handler %s pour l'event %s", handler.__name__, event)

    def _appeler(self, handler: Callable, message: Message) -> Any:
        """Passe le message en premier argument, le reste par nom de paramètre."""
        kwargs: dict[str, Any] = {}
        for nom in list(inspect.signature(handler).parameters)[1:]:
            if nom == "uow":
                kwargs[nom] = self.uow
            elif nom in self.dependencies:
                kwargs[nom] = self.dependencies[nom]
            # sinon le handler garde sa valeur par défaut
        return handler(message, **kwargs)
