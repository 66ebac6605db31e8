"""
Configuration de l'application.

Toutes les valeurs sont lues depuis des variables d'environnement,
avec des valeurs par défaut adaptées au développement local.
"""

from __future__ import annotations

import os


def get_database_uri() -> str:
    return os.environ.get("INVENTAIRE_DB_URI", "sqlite:///inventaire.db")


def get_jours_alerte_expiration() -> int:
    """Nombre de jours avant l'expiration à partir duquel un lot est 'expiring_soon'."""
    return int(os.environ.get("INVENTAIRE_JOURS_ALERTE_EXPIRATION", "30"))


def get_jours_rétention_audit() -> int:
    return int(os.environ.get("INVENTAIRE_JOURS_RETENTION_AUDIT", "365"))


def get_plancher_rétention_audit() -> int:
    """
    Plancher de protection du journal d'audit.

    Aucune purge ne peut supprimer des entrées plus récentes que ce
    nombre de jours, quelle que soit la rétention demandée.
    """
    return int(os.environ.get("INVENTAIRE_PLANCHER_RETENTION_AUDIT_JOURS", "90"))


def get_smtp_config() -> dict:
    return dict(
        smtp_host=os.environ.get("INVENTAIRE_SMTP_HOST", "localhost"),
        smtp_port=int(os.environ.get("INVENTAIRE_SMTP_PORT", "587")),
    )


def get_email_alertes() -> str:
    return os.environ.get("INVENTAIRE_EMAIL_ALERTES", "stock@example.com")


def get_log_level() -> str:
    return os.environ.get("INVENTAIRE_LOG_LEVEL", "INFO")
