"""
Pattern Unit of Work.

Le Unit of Work (UoW) gère la notion de transaction atomique.
Il coordonne l'écriture en base de données et la collecte
des événements émis par les agrégats au cours de la transaction.

Le UoW agit comme un context manager :
    with uow:
        # ... opérations sur les repositories ...
        uow.commit()

Tout ce qui n'est pas commité est annulé à la sortie du bloc :
une vente qui échoue au milieu de son plan ne laisse aucune
déduction partielle en base.
"""

from __future__ import annotations

import abc

from sqlalchemy import create_engine
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from inventaire import config
from inventaire.adapters import repository

# SQLSTATE d'un échec de sérialisation (PostgreSQL en SERIALIZABLE)
ÉCHEC_DE_SÉRIALISATION = "40001"

DEFAULT_SESSION_FACTORY = sessionmaker(
    bind=create_engine(
        config.get_database_uri(),
        isolation_level="SERIALIZABLE",
    )
)


class ConflitDeVersion(Exception):
    """
    Levée au commit quand un agrégat a été modifié par une autre transaction.

    Le numéro de version lu ne correspond plus à celui en base :
    la transaction est annulée en entier.
    """
    pass


class AbstractUnitOfWork(abc.ABC):
    """
    Interface abstraite du Unit of Work.

    Fournit les repositories `produits`, `audit` et `numéros_lot`
    et gère commit/rollback. Le rollback est automatique si commit()
    n'est pas appelé (grâce au __exit__ du context manager).
    """

    produits: repository.AbstractRepository
    audit: repository.AbstractJournalAudit
    numéros_lot: repository.AbstractSéquenceNuméroLot

    def __init__(self) -> None:
        self._événements_validés: list = []

    def __enter__(self) -> AbstractUnitOfWork:
        return self

    def __exit__(self, *args: object) -> None:
        self.rollback()

    def commit(self) -> None:
        """
        Valide la transaction puis met de côté les événements des agrégats vus.

        Un handler peut enchaîner plusieurs transactions (la maintenance
        en ouvre une par lot) : les événements sont donc retirés des
        agrégats à chaque commit, et seuls ceux des transactions
        validées seront publiés.
        """
        self._commit()
        for produit in self.produits.seen:
            while produit.événements:
                self._événements_validés.append(produit.événements.pop(0))

    def collect_new_events(self):
        """Rend au message bus les événements des transactions validées."""
        while self._événements_validés:
            yield self._événements_validés.pop(0)

    @abc.abstractmethod
    def _commit(self) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def rollback(self) -> None:
        raise NotImplementedError


class SqlAlchemyUnitOfWork(AbstractUnitOfWork):
    """
    Implémentation concrète du UoW avec SQLAlchemy.

    Crée une session à l'entrée du context manager,
    la ferme à la sortie. Rollback automatique si pas de commit.
    """

    def __init__(self, session_factory: sessionmaker = DEFAULT_SESSION_FACTORY):
        super().__init__()
        self.session_factory = session_factory

    def __enter__(self) -> SqlAlchemyUnitOfWork:
        self.session: Session = self.session_factory()
        self.produits = repository.SqlAlchemyRepository(self.session)
        self.audit = repository.SqlAlchemyJournalAudit(self.session)
        self.numéros_lot = repository.SqlAlchemySéquenceNuméroLot(self.session)
        return super().__enter__()

    def __exit__(self, *args: object) -> None:
        super().__exit__(*args)
        self.session.close()

    def _commit(self) -> None:
        try:
            self.session.commit()
        except StaleDataError as e:
            self.session.rollback()
            raise ConflitDeVersion(str(e)) from e
        except DBAPIError as e:
            if not _est_échec_de_sérialisation(e):
                raise
            self.session.rollback()
            raise ConflitDeVersion(str(e)) from e

    def rollback(self) -> None:
        self.session.rollback()


def _est_échec_de_sérialisation(erreur: DBAPIError) -> bool:
    """psycopg2 expose le SQLSTATE dans `pgcode`, psycopg 3 dans `sqlstate`."""
    orig = erreur.orig
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    return code == ÉCHEC_DE_SÉRIALISATION
