"""
Tests d'intégration des repositories avec SQLite en mémoire.

Ces tests vérifient que le mapping ORM fonctionne correctement :
- Sauvegarder et recharger un Produit avec ses Lots
- Retrouver le produit propriétaire d'un lot
- Lister les lots candidats à la quarantaine
- Purger le journal d'audit sans toucher aux entrées protégées
- Tirer les numéros de la séquence journalière
"""

from datetime import date, datetime, timedelta
from decimal import Decimal

from inventaire.adapters import repository
from inventaire.domain.model import EntréeAudit, Lot, Produit, TypeAction
from inventaire.domain.statut import StatutLot

MAINTENANT = datetime(2024, 12, 1, 8, 0)


def créer_produit(*lots: Lot) -> Produit:
    return Produit("IBUPROFENE-400", "Ibuprofène 400 mg", seuil_réapprovisionnement=5, lots=list(lots))


def créer_lot(id_lot: str, quantité: int, expiration: date | None = None, **kwargs) -> Lot:
    return Lot(
        id_lot,
        "IBUPROFENE-400",
        f"BT241201-{id_lot[-3:]}",
        quantité,
        date_expiration=expiration,
        créé_le=kwargs.pop("créé_le", MAINTENANT),
        **kwargs,
    )


class TestSqlAlchemyRepository:
    def test_sauvegarder_et_recharger_un_produit(self, sqlite_session_factory):
        session = sqlite_session_factory()
        repo = repository.SqlAlchemyRepository(session)
        repo.add(créer_produit(
            créer_lot("lot-001", 100, date(2025, 6, 1), coût_unitaire=Decimal("1.25"), fournisseur="Cerp"),
            créer_lot("lot-002", 50),
        ))
        session.commit()

        rechargé = repository.SqlAlchemyRepository(sqlite_session_factory()).get("IBUPROFENE-400")

        assert rechargé is not None
        assert rechargé.nom == "Ibuprofène 400 mg"
        assert rechargé.stock_total == 150
        assert rechargé.événements == []
        lot = rechargé.lot("lot-001")
        assert lot.numéro_lot == "BT241201-001"
        assert lot.date_expiration == date(2025, 6, 1)
        assert lot.coût_unitaire == Decimal("1.25")
        assert lot.statut == StatutLot.ACTIF
        assert {l.id_lot for l in rechargé.lots} == {"lot-001", "lot-002"}

    def test_les_déductions_survivent_au_rechargement(self, sqlite_session_factory):
        session = sqlite_session_factory()
        repo = repository.SqlAlchemyRepository(session)
        produit = créer_produit(créer_lot("lot-001", 100))
        repo.add(produit)
        session.commit()

        produit = repo.get("IBUPROFENE-400")
        produit.ajuster_lot("lot-001", 90, "casse", MAINTENANT)
        session.commit()

        rechargé = repository.SqlAlchemyRepository(sqlite_session_factory()).get("IBUPROFENE-400")
        assert rechargé.lot("lot-001").quantité_restante == 90
        assert rechargé.stock_total == 90
        assert rechargé.numéro_version == 1

    def test_get_par_id_lot(self, sqlite_session_factory):
        session = sqlite_session_factory()
        repo = repository.SqlAlchemyRepository(session)
        repo.add(créer_produit(créer_lot("lot-001", 10), créer_lot("lot-002", 20)))
        session.commit()

        produit = repo.get_par_id_lot("lot-002")

        assert produit.id_produit == "IBUPROFENE-400"
        assert produit in repo.seen
        assert repo.get_par_id_lot("inexistant") is None

    def test_numéro_lot_existe(self, sqlite_session_factory):
        session = sqlite_session_factory()
        repo = repository.SqlAlchemyRepository(session)
        repo.add(créer_produit(créer_lot("lot-001", 10)))
        session.commit()

        assert repo.numéro_lot_existe("BT241201-001")
        assert not repo.numéro_lot_existe("BT241201-002")

    def test_lots_à_mettre_en_quarantaine(self, sqlite_session_factory):
        session = sqlite_session_factory()
        repo = repository.SqlAlchemyRepository(session)
        vide = créer_lot("lot-003", 5, date(2024, 10, 1))
        vide.modifier_quantité(0)
        isolé = créer_lot("lot-004", 5, date(2024, 10, 1))
        isolé.mettre_en_quarantaine()
        repo.add(créer_produit(
            créer_lot("lot-001", 5, date(2024, 11, 1)),
            créer_lot("lot-002", 5, date(2025, 1, 1)),
            vide,
            isolé,
            créer_lot("lot-005", 5, None),
        ))
        session.commit()

        assert repo.ids_lots_à_mettre_en_quarantaine(date(2024, 12, 1)) == ["lot-001"]


class TestJournalAudit:
    def test_lister_par_référence(self, sqlite_session_factory):
        session = sqlite_session_factory()
        repository.SqlAlchemyRepository(session).add(créer_produit(créer_lot("lot-001", 10)))
        journal = repository.SqlAlchemyJournalAudit(session)
        journal.add(EntréeAudit(
            "IBUPROFENE-400", "lot-001", TypeAction.DÉDUCTION_VENTE, 10, 7,
            horodatage=MAINTENANT, id_référence="ticket-1",
        ))
        journal.add(EntréeAudit(
            "IBUPROFENE-400", "lot-001", TypeAction.AJUSTEMENT_MANUEL, 7, 6,
            horodatage=MAINTENANT, motif="casse",
        ))
        session.commit()

        (entrée,) = repository.SqlAlchemyJournalAudit(sqlite_session_factory()).lister(
            id_référence="ticket-1"
        )

        assert entrée.action == TypeAction.DÉDUCTION_VENTE
        assert entrée.delta == -3
        assert entrée.id_lot == "lot-001"

    def test_purger_garde_les_entrées_récentes_et_protégées(self, sqlite_session_factory):
        session = sqlite_session_factory()
        repository.SqlAlchemyRepository(session).add(créer_produit())
        journal = repository.SqlAlchemyJournalAudit(session)
        for jours, protégée in [(200, False), (200, True), (10, False)]:
            journal.add(EntréeAudit(
                "IBUPROFENE-400", None, TypeAction.AJUSTEMENT_MANUEL, 5, 4,
                horodatage=MAINTENANT - timedelta(days=jours),
                protégée=protégée,
            ))
        session.commit()

        purgées = journal.purger(avant=MAINTENANT - timedelta(days=90))
        session.commit()

        assert purgées == 1
        restantes = repository.SqlAlchemyJournalAudit(sqlite_session_factory()).lister()
        assert sorted(e.protégée for e in restantes) == [False, True]


class TestSéquenceNuméroLot:
    def test_la_séquence_repart_à_un_chaque_jour(self, sqlite_session_factory):
        session = sqlite_session_factory()
        séquence = repository.SqlAlchemySéquenceNuméroLot(session)

        assert séquence.suivant(date(2024, 12, 1)) == 1
        assert séquence.suivant(date(2024, 12, 1)) == 2
        assert séquence.suivant(date(2024, 12, 2)) == 1
        session.commit()

        autre_session = sqlite_session_factory()
        assert repository.SqlAlchemySéquenceNuméroLot(autre_session).suivant(date(2024, 12, 1)) == 3
