"""
Pattern Repository.

Le repository fournit une abstraction sur la couche de persistance.
Il expose une interface de type collection (add, get) qui masque
les détails de l'accès aux données.

Les noms de méthodes du pattern (add, get) restent en anglais
car ce sont des conventions reconnues. Les méthodes spécifiques
au domaine (get_par_id_lot) sont en français.

Trois repositories coexistent dans une même transaction :
- les produits (agrégats, avec leurs lots),
- le journal d'audit (en ajout seul),
- la séquence journalière des numéros de lot.
"""

from __future__ import annotations

import abc
from datetime import date, datetime
from typing import Optional

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from inventaire.adapters import orm
from inventaire.domain import model
from inventaire.domain.statut import StatutLot


class AbstractRepository(abc.ABC):
    """
    Interface abstraite du repository des produits.

    Le pattern Template Method est utilisé : les méthodes publiques
    (add, get) gèrent le tracking via `seen`, puis délèguent
    aux méthodes abstraites préfixées _ que les sous-classes implémentent.
    """

    seen: set[model.Produit]

    def __init__(self) -> None:
        # `seen` trace tous les agrégats consultés pendant la transaction,
        # ce qui permet au Unit of Work de collecter leurs événements.
        self.seen: set[model.Produit] = set()

    def add(self, produit: model.Produit) -> None:
        """Ajoute un produit au repository et le marque comme vu."""
        self._add(produit)
        self.seen.add(produit)

    def get(self, id_produit: str) -> model.Produit | None:
        """Récupère un produit par son identifiant et le marque comme vu."""
        produit = self._get(id_produit)
        if produit:
            self.seen.add(produit)
        return produit

    def get_par_id_lot(self, id_lot: str) -> model.Produit | None:
        """Récupère le produit propriétaire du lot donné."""
        produit = self._get_par_id_lot(id_lot)
        if produit:
            self.seen.add(produit)
        return produit

    @abc.abstractmethod
    def numéro_lot_existe(self, numéro_lot: str) -> bool:
        raise NotImplementedError

    @abc.abstractmethod
    def ids_lots_à_mettre_en_quarantaine(self, aujourdhui: date) -> list[str]:
        """Lots expirés, non vides et pas encore en quarantaine."""
        raise NotImplementedError

    @abc.abstractmethod
    def _add(self, produit: model.Produit) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def _get(self, id_produit: str) -> model.Produit | None:
        raise NotImplementedError

    @abc.abstractmethod
    def _get_par_id_lot(self, id_lot: str) -> model.Produit | None:
        raise NotImplementedError


class SqlAlchemyRepository(AbstractRepository):
    """Implémentation concrète du repository avec SQLAlchemy."""

    def __init__(self, session: Session):
        super().__init__()
        self.session = session

    def _add(self, produit: model.Produit) -> None:
        self.session.add(produit)

    def _get(self, id_produit: str) -> model.Produit | None:
        return (
            self.session.query(model.Produit)
            .filter_by(id_produit=id_produit)
            .first()
        )

    def _get_par_id_lot(self, id_lot: str) -> model.Produit | None:
        return (
            self.session.query(model.Produit)
            .join(model.Produit.lots)
            .filter(model.Lot.id_lot == id_lot)
            .first()
        )

    def numéro_lot_existe(self, numéro_lot: str) -> bool:
        return (
            self.session.query(model.Lot.id_lot)
            .filter(model.Lot.numéro_lot == numéro_lot)
            .first()
        ) is not None

    def ids_lots_à_mettre_en_quarantaine(self, aujourdhui: date) -> list[str]:
        lignes = (
            self.session.query(model.Lot.id_lot)
            .filter(
                model.Lot.date_expiration.isnot(None),
                model.Lot.date_expiration < aujourdhui,
                model.Lot.quantité_restante > 0,
                model.Lot.statut != StatutLot.EN_QUARANTAINE,
            )
            .order_by(model.Lot.date_expiration, model.Lot.créé_le)
            .all()
        )
        return [id_lot for (id_lot,) in lignes]


class AbstractJournalAudit(abc.ABC):
    """
    Journal d'audit en ajout seul.

    Aucune méthode ne modifie une entrée existante ; seule la purge
    de rétention en supprime.
    """

    @abc.abstractmethod
    def add(self, entrée: model.EntréeAudit) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def lister(
        self,
        id_produit: Optional[str] = None,
        id_lot: Optional[str] = None,
        id_référence: Optional[str] = None,
    ) -> list[model.EntréeAudit]:
        raise NotImplementedError

    @abc.abstractmethod
    def purger(self, avant: datetime) -> int:
        """Supprime les entrées non protégées antérieures à `avant`, retourne leur nombre."""
        raise NotImplementedError


class SqlAlchemyJournalAudit(AbstractJournalAudit):

    def __init__(self, session: Session):
        self.session = session

    def add(self, entrée: model.EntréeAudit) -> None:
        self.session.add(entrée)

    def lister(
        self,
        id_produit: Optional[str] = None,
        id_lot: Optional[str] = None,
        id_référence: Optional[str] = None,
    ) -> list[model.EntréeAudit]:
        query = self.session.query(model.EntréeAudit)
        if id_produit is not None:
            query = query.filter(model.EntréeAudit.id_produit == id_produit)
        if id_lot is not None:
            query = query.filter(model.EntréeAudit.id_lot == id_lot)
        if id_référence is not None:
            query = query.filter(model.EntréeAudit.id_référence == id_référence)
        return query.order_by(model.EntréeAudit.horodatage).all()

    def purger(self, avant: datetime) -> int:
        return (
            self.session.query(model.EntréeAudit)
            .filter(
                model.EntréeAudit.horodatage < avant,
                model.EntréeAudit.protégée.is_(False),
            )
            .delete(synchronize_session=False)
        )


class AbstractSéquenceNuméroLot(abc.ABC):
    """Compteur par jour calendaire pour la génération des numéros de lot."""

    @abc.abstractmethod
    def suivant(self, jour: date) -> int:
        raise NotImplementedError


class SqlAlchemySéquenceNuméroLot(AbstractSéquenceNuméroLot):
    """
    Séquence journalière sur une ligne compteur verrouillée.

    On n'utilise jamais « compter les lots du jour puis insérer » :
    deux réceptions simultanées obtiendraient le même numéro.
    L'UPDATE incrémente et verrouille la ligne du jour jusqu'au commit ;
    si elle n'existe pas encore, on l'insère dans un savepoint et,
    en cas de course à la création (IntegrityError), on recommence.
    """

    def __init__(self, session: Session):
        self.session = session

    def suivant(self, jour: date) -> int:
        table = orm.batch_number_sequences
        for _ in range(2):
            résultat = self.session.execute(
                update(table)
                .where(table.c.day == jour)
                .values(last_value=table.c.last_value + 1)
            )
            if résultat.rowcount:
                return self.session.execute(
                    select(table.c.last_value).where(table.c.day == jour)
                ).scalar_one()

            savepoint = self.session.begin_nested()
            try:
                self.session.execute(insert(table).values(day=jour, last_value=1))
                savepoint.commit()
                return 1
            except IntegrityError:
                # Une autre transaction a créé le compteur du jour entre-temps
                savepoint.rollback()
        raise RuntimeError(f"Impossible d'obtenir un numéro de lot pour le {jour}")
