"""
Adapter pour l'horloge.

Le statut d'un lot dépend de la date du jour : le domaine et les
handlers ne lisent jamais l'heure système directement, ils reçoivent
une horloge injectée (une horloge fixe dans les tests).
"""

from __future__ import annotations

import abc
from datetime import date, datetime, timezone


class AbstractHorloge(abc.ABC):

    @abc.abstractmethod
    def maintenant(self) -> datetime:
        raise NotImplementedError

    def aujourdhui(self) -> date:
        return self.maintenant().date()


class HorlogeSystème(AbstractHorloge):
    """Horloge de production, en UTC."""

    def maintenant(self) -> datetime:
        return datetime.now(timezone.utc).replace(tzinfo=None)
