"""
Classification du statut d'un lot.

Le statut d'un lot se déduit de sa quantité restante et de sa date
d'expiration par rapport à la date du jour. Seule la quarantaine est
un statut posé explicitement (par la maintenance ou une intervention
manuelle) : elle n'est jamais déduite.
"""

from __future__ import annotations

import enum
from datetime import date, timedelta
from typing import Optional

JOURS_ALERTE_PAR_DÉFAUT = 30


class StatutLot(str, enum.Enum):
    ACTIF = "active"
    EXPIRATION_PROCHE = "expiring_soon"
    EXPIRÉ = "expired"
    ÉPUISÉ = "depleted"
    EN_QUARANTAINE = "quarantined"


def classer_statut(
    quantité_restante: int,
    date_expiration: Optional[date],
    aujourdhui: date,
    jours_alerte: int = JOURS_ALERTE_PAR_DÉFAUT,
) -> StatutLot:
    """
    Fonction pure : (quantité, expiration, date du jour) -> statut.

    Ordre de priorité :
    1. quantité nulle               -> ÉPUISÉ
    2. expiration passée            -> EXPIRÉ
    3. expiration dans la fenêtre   -> EXPIRATION_PROCHE
    4. sinon                        -> ACTIF

    Une date d'expiration None signifie que le lot n'expire jamais.
    """
    if quantité_restante == 0:
        return StatutLot.ÉPUISÉ
    if date_expiration is not None:
        if date_expiration < aujourdhui:
            return StatutLot.EXPIRÉ
        if date_expiration <= aujourdhui + timedelta(days=jours_alerte):
            return StatutLot.EXPIRATION_PROCHE
    return StatutLot.ACTIF
