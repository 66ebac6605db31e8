"""
Tests des handlers via la service layer (high gear).

Ces tests utilisent des fakes (FakeRepository, FakeUnitOfWork)
pour tester le comportement métier sans base de données ni I/O.
C'est le "high gear" : on teste les cas d'usage complets.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta

import pytest

from inventaire.adapters.horloge import AbstractHorloge
from inventaire.adapters.notifications import AbstractNotifications
from inventaire.adapters.repository import (
    AbstractJournalAudit,
    AbstractRepository,
    AbstractSéquenceNuméroLot,
)
from inventaire.domain import commands, model
from inventaire.domain.model import EntréeAudit, Produit, TypeAction
from inventaire.domain.statut import StatutLot
from inventaire.service_layer import bootstrap, handlers, messagebus, unit_of_work


# --- Fakes pour les tests ---


class FakeRepository(AbstractRepository):
    """
    Repository en mémoire pour les tests.

    Utilise un set Python au lieu d'une base de données.
    Hérite d'AbstractRepository pour bénéficier du tracking `seen`.
    """

    def __init__(self, produits: list[Produit] | None = None):
        super().__init__()
        self._produits = set(produits or [])

    def _add(self, produit: Produit) -> None:
        self._produits.add(produit)

    def _get(self, id_produit: str) -> Produit | None:
        return next((p for p in self._produits if p.id_produit == id_produit), None)

    def _get_par_id_lot(self, id_lot: str) -> Produit | None:
        return next(
            (p for p in self._produits
             for l in p.lots
             if l.id_lot == id_lot),
            None,
        )

    def numéro_lot_existe(self, numéro_lot: str) -> bool:
        return any(l.numéro_lot == numéro_lot for p in self._produits for l in p.lots)

    def ids_lots_à_mettre_en_quarantaine(self, aujourdhui: date) -> list[str]:
        return [
            l.id_lot
            for p in self._produits
            for l in p.lots_triés()
            if l.date_expiration is not None
            and l.date_expiration < aujourdhui
            and l.quantité_restante > 0
            and not l.est_en_quarantaine
        ]


class FakeJournalAudit(AbstractJournalAudit):
    def __init__(self) -> None:
        self.entrées: list[EntréeAudit] = []

    def add(self, entrée: EntréeAudit) -> None:
        self.entrées.append(entrée)

    def lister(self, id_produit=None, id_lot=None, id_référence=None) -> list[EntréeAudit]:
        return sorted(
            (
                e for e in self.entrées
                if (id_produit is None or e.id_produit == id_produit)
                and (id_lot is None or e.id_lot == id_lot)
                and (id_référence is None or e.id_référence == id_référence)
            ),
            key=lambda e: e.horodatage,
        )

    def purger(self, avant: datetime) -> int:
        gardées = [e for e in self.entrées if e.protégée or e.horodatage >= avant]
        purgées = len(self.entrées) - len(gardées)
        self.entrées = gardées
        return purgées


class FakeSéquenceNuméroLot(AbstractSéquenceNuméroLot):
    def __init__(self) -> None:
        self.compteurs: dict[date, int] = {}

    def suivant(self, jour: date) -> int:
        self.compteurs[jour] = self.compteurs.get(jour, 0) + 1
        return self.compteurs[jour]


class FakeUnitOfWork(unit_of_work.AbstractUnitOfWork):
    """
    Unit of Work en mémoire pour les tests.

    L'attribut `committed` permet de vérifier que le commit
    a bien été appelé dans les tests.
    """

    def __init__(self, produits: FakeRepository | None = None) -> None:
        super().__init__()
        self.produits = produits or FakeRepository()
        self.audit = FakeJournalAudit()
        self.numéros_lot = FakeSéquenceNuméroLot()
        self.committed = False

    def __enter__(self) -> FakeUnitOfWork:
        return super().__enter__()

    def _commit(self) -> None:
        self.committed = True

    def rollback(self) -> None:
        pass


class FakeNotifications(AbstractNotifications):
    """Capture les notifications envoyées pour vérification dans les tests."""

    def __init__(self) -> None:
        self.envoyées: list[tuple[str, str]] = []

    def send(self, destination: str, message: str) -> None:
        self.envoyées.append((destination, message))


class HorlogeFixe(AbstractHorloge):
    def __init__(self, instant: datetime) -> None:
        self.instant = instant

    def maintenant(self) -> datetime:
        return self.instant


MAINTENANT = datetime(2024, 12, 1, 10, 0)


def bootstrap_test_bus(uow: FakeUnitOfWork | None = None) -> messagebus.MessageBus:
    """Construit un bus de test avec les fakes."""
    return bootstrap.bootstrap(
        start_orm=False,
        uow=uow or FakeUnitOfWork(),
        notifications_adapter=FakeNotifications(),
        horloge=HorlogeFixe(MAINTENANT),
        plancher_rétention=90,
    )


def préparer_produit(
    bus: messagebus.MessageBus,
    lots: list[tuple[int, date | None]],
    id_produit: str = "AMOXICILLINE-1G",
    seuil: int = 0,
) -> list[model.InstantanéLot]:
    bus.handle(commands.EnregistrerProduit(id_produit, "Amoxicilline 1 g", seuil_réapprovisionnement=seuil))
    reçus = []
    for quantité, expiration in lots:
        bus.dependencies["horloge"].instant += timedelta(seconds=1)
        reçus.append(
            bus.handle(commands.RecevoirLot(id_produit, quantité, date_expiration=expiration))[0]
        )
    return reçus


def vendre(bus: messagebus.MessageBus, id_produit: str, quantité: int, référence: str | None = None):
    plan = bus.handle(commands.PlanifierAllocation(id_produit, quantité))[0]
    return bus.handle(commands.AppliquerAllocation(plan, id_référence=référence))[0]


# --- Tests de la réception ---


class TestRecevoirLot:
    def test_recevoir_un_lot_numérote_dans_la_séquence_du_jour(self):
        bus = bootstrap_test_bus()

        premier, second = préparer_produit(bus, [(10, date(2025, 6, 1)), (5, None)])

        assert premier.numéro_lot == "BT241201-001"
        assert second.numéro_lot == "BT241201-002"
        assert bus.uow.committed
        assert bus.uow.produits.get("AMOXICILLINE-1G").stock_total == 15

    def test_un_numéro_saisi_fait_avancer_la_séquence(self):
        bus = bootstrap_test_bus()
        bus.handle(commands.EnregistrerProduit("AMOXICILLINE-1G", "Amoxicilline 1 g"))
        bus.handle(commands.RecevoirLot("AMOXICILLINE-1G", 3, numéro_lot="BT241201-001"))

        lot = bus.handle(commands.RecevoirLot("AMOXICILLINE-1G", 4))[0]

        assert lot.numéro_lot == "BT241201-002"

    def test_numéro_saisi_dupliqué(self):
        bus = bootstrap_test_bus()
        bus.handle(commands.EnregistrerProduit("AMOXICILLINE-1G", "Amoxicilline 1 g"))
        bus.handle(commands.RecevoirLot("AMOXICILLINE-1G", 3, numéro_lot="FOURNISSEUR-77"))

        with pytest.raises(model.NuméroLotDupliqué):
            bus.handle(commands.RecevoirLot("AMOXICILLINE-1G", 3, numéro_lot="FOURNISSEUR-77"))

    def test_produit_inconnu(self):
        bus = bootstrap_test_bus()
        with pytest.raises(model.ProduitIntrouvable):
            bus.handle(commands.RecevoirLot("INEXISTANT", 10))

    def test_produit_inactif(self):
        bus = bootstrap_test_bus()
        bus.handle(commands.EnregistrerProduit("RETIRÉ", "Produit retiré", actif=False))
        with pytest.raises(model.ProduitIntrouvable):
            bus.handle(commands.RecevoirLot("RETIRÉ", 10))

    def test_quantité_invalide(self):
        bus = bootstrap_test_bus()
        bus.handle(commands.EnregistrerProduit("AMOXICILLINE-1G", "Amoxicilline 1 g"))
        with pytest.raises(model.QuantitéInvalide):
            bus.handle(commands.RecevoirLot("AMOXICILLINE-1G", 0))

    def test_la_réception_est_journalisée(self):
        bus = bootstrap_test_bus()
        (lot,) = préparer_produit(bus, [(10, None)])

        (entrée,) = bus.uow.audit.lister(id_lot=lot.id_lot)

        assert entrée.action == TypeAction.RÉCEPTION
        assert entrée.delta == 10


# --- Tests de la vente ---


class TestPlanifierAllocation:
    def test_planifier_ne_valide_aucune_transaction(self):
        bus = bootstrap_test_bus()
        a, b, c = préparer_produit(
            bus, [(10, date(2025, 1, 1)), (5, date(2025, 2, 1)), (20, None)]
        )
        bus.uow.committed = False

        plan = bus.handle(commands.PlanifierAllocation("AMOXICILLINE-1G", 12))[0]

        assert [(l.id_lot, l.quantité) for l in plan.lignes] == [(a.id_lot, 10), (b.id_lot, 2)]
        assert bus.uow.committed is False
        assert bus.uow.produits.get("AMOXICILLINE-1G").stock_total == 35

    def test_stock_insuffisant(self):
        bus = bootstrap_test_bus()
        préparer_produit(bus, [(10, None)])

        with pytest.raises(model.StockInsuffisant) as excinfo:
            bus.handle(commands.PlanifierAllocation("AMOXICILLINE-1G", 11))

        assert excinfo.value.disponible == 10


class TestAppliquerAllocation:
    def test_vente_fefo(self):
        bus = bootstrap_test_bus()
        a, b, c = préparer_produit(
            bus, [(10, date(2025, 1, 1)), (5, date(2025, 2, 1)), (20, None)]
        )

        résultat = vendre(bus, "AMOXICILLINE-1G", 12, référence="ticket-1")

        produit = bus.uow.produits.get("AMOXICILLINE-1G")
        assert résultat.total_déduit == 12
        assert résultat.nouveau_stock_total == 23
        assert [l.quantité_restante for l in produit.lots_triés()] == [0, 3, 20]

    def test_conservation_du_stock(self):
        bus = bootstrap_test_bus()
        préparer_produit(bus, [(10, date(2025, 1, 1)), (5, date(2025, 2, 1)), (20, None)])

        vendre(bus, "AMOXICILLINE-1G", 12)
        vendre(bus, "AMOXICILLINE-1G", 4)

        produit = bus.uow.produits.get("AMOXICILLINE-1G")
        assert produit.stock_total == sum(l.quantité_restante for l in produit.lots) == 19

    def test_chaque_mouvement_est_tracé_dans_l_audit(self):
        bus = bootstrap_test_bus()
        lots = préparer_produit(bus, [(10, date(2025, 1, 1)), (5, date(2025, 2, 1))])
        vendre(bus, "AMOXICILLINE-1G", 12)
        bus.handle(commands.AjusterLot(lots[1].id_lot, 1, "casse"))

        produit = bus.uow.produits.get("AMOXICILLINE-1G")
        for lot in produit.lots:
            mouvements = [
                e.delta for e in bus.uow.audit.lister(id_lot=lot.id_lot)
                if e.action != TypeAction.RÉCEPTION
            ]
            assert -sum(mouvements) == lot.quantité_originale - lot.quantité_restante

    def test_deux_ventes_concurrentes_sur_le_même_lot(self):
        bus = bootstrap_test_bus()
        (lot,) = préparer_produit(bus, [(10, date(2025, 6, 1))])
        plan_1 = bus.handle(commands.PlanifierAllocation("AMOXICILLINE-1G", 8))[0]
        plan_2 = bus.handle(commands.PlanifierAllocation("AMOXICILLINE-1G", 8))[0]

        bus.handle(commands.AppliquerAllocation(plan_1, id_référence="caisse-1"))
        with pytest.raises(model.ModificationConcurrente) as excinfo:
            bus.handle(commands.AppliquerAllocation(plan_2, id_référence="caisse-2"))

        assert excinfo.value.id_lot == lot.id_lot
        assert excinfo.value.disponible == 2
        produit = bus.uow.produits.get("AMOXICILLINE-1G")
        assert produit.stock_total == 2
        assert bus.uow.audit.lister(id_référence="caisse-2") == []

    def test_plan_vide_refusé(self):
        bus = bootstrap_test_bus()
        préparer_produit(bus, [(10, None)])
        plan = model.PlanAllocation("AMOXICILLINE-1G", 1, ())
        with pytest.raises(model.QuantitéInvalide):
            bus.handle(commands.AppliquerAllocation(plan))

    def test_conflit_de_version_devient_modification_concurrente(self):
        class UowEnConflit(FakeUnitOfWork):
            def _commit(self):
                raise unit_of_work.ConflitDeVersion("version 1 attendue")

        uow = UowEnConflit()
        bus = bootstrap_test_bus(uow)
        produit = Produit("AMOXICILLINE-1G", "Amoxicilline 1 g", lots=[
            model.Lot("lot-1", "AMOXICILLINE-1G", "BT241130-001", 10),
        ])
        uow.produits.add(produit)
        plan = model.PlanAllocation(
            "AMOXICILLINE-1G", 3, (model.LigneAllocation("lot-1", 3),)
        )

        with pytest.raises(model.ModificationConcurrente):
            bus.handle(commands.AppliquerAllocation(plan))


# --- Tests de l'ajustement et de l'annulation ---


class TestAjusterLot:
    def test_ajuster_un_lot(self):
        bus = bootstrap_test_bus()
        (lot,) = préparer_produit(bus, [(10, None)])

        résultat = bus.handle(commands.AjusterLot(lot.id_lot, 6, "inventaire physique", id_acteur="p-7"))[0]

        assert résultat.delta == -4
        assert résultat.nouveau_stock_total == 6
        dernière = bus.uow.audit.lister(id_lot=lot.id_lot)[-1]
        assert dernière.action == TypeAction.AJUSTEMENT_MANUEL
        assert dernière.id_acteur == "p-7"

    def test_lot_inconnu(self):
        bus = bootstrap_test_bus()
        with pytest.raises(model.LotIntrouvable):
            bus.handle(commands.AjusterLot("inexistant", 1, "casse"))

    def test_quantité_négative(self):
        bus = bootstrap_test_bus()
        (lot,) = préparer_produit(bus, [(10, None)])
        with pytest.raises(model.QuantitéNégative):
            bus.handle(commands.AjusterLot(lot.id_lot, -2, "erreur"))


class TestAnnulerVente:
    def test_annuler_une_vente_restitue_chaque_lot(self):
        bus = bootstrap_test_bus()
        a, b = préparer_produit(bus, [(10, date(2025, 1, 1)), (5, date(2025, 2, 1))])
        vendre(bus, "AMOXICILLINE-1G", 12, référence="ticket-9")

        résultat = bus.handle(commands.AnnulerVente("ticket-9", motif="retour client"))[0]

        assert résultat.total_restitué == 12
        assert résultat.stocks_totaux == {"AMOXICILLINE-1G": 15}
        produit = bus.uow.produits.get("AMOXICILLINE-1G")
        assert [l.quantité_restante for l in produit.lots_triés()] == [10, 5]

    def test_annuler_une_vente_portant_sur_deux_produits(self):
        bus = bootstrap_test_bus()
        préparer_produit(bus, [(10, None)])
        préparer_produit(bus, [(8, None)], id_produit="CETIRIZINE-10")
        vendre(bus, "AMOXICILLINE-1G", 4, référence="ticket-3")
        vendre(bus, "CETIRIZINE-10", 5, référence="ticket-3")

        résultat = bus.handle(commands.AnnulerVente("ticket-3"))[0]

        assert résultat.total_restitué == 9
        assert résultat.stocks_totaux == {"AMOXICILLINE-1G": 10, "CETIRIZINE-10": 8}

    def test_une_vente_ne_s_annule_qu_une_fois(self):
        bus = bootstrap_test_bus()
        préparer_produit(bus, [(10, None)])
        vendre(bus, "AMOXICILLINE-1G", 3, référence="ticket-9")
        bus.handle(commands.AnnulerVente("ticket-9"))

        with pytest.raises(handlers.VenteDéjàAnnulée):
            bus.handle(commands.AnnulerVente("ticket-9"))

    def test_vente_inconnue(self):
        bus = bootstrap_test_bus()
        with pytest.raises(handlers.VenteIntrouvable):
            bus.handle(commands.AnnulerVente("ticket-fantôme"))


# --- Tests de la maintenance ---


class FakeRepositoryAvecLotFantôme(FakeRepository):
    """Renvoie en plus un lot qui n'existe plus au moment du traitement."""

    def ids_lots_à_mettre_en_quarantaine(self, aujourdhui: date) -> list[str]:
        return ["lot-fantôme"] + super().ids_lots_à_mettre_en_quarantaine(aujourdhui)


class TestQuarantaine:
    def test_les_lots_expirés_sont_mis_en_quarantaine(self):
        bus = bootstrap_test_bus()
        expiré, valide = préparer_produit(
            bus, [(4, date(2024, 11, 15)), (6, date(2025, 6, 1))]
        )

        résultat = bus.handle(commands.MettreEnQuarantaineLotsExpirés())[0]

        assert résultat == model.RésultatQuarantaine(mis_en_quarantaine=1, échecs=0)
        produit = bus.uow.produits.get("AMOXICILLINE-1G")
        assert produit.lot(expiré.id_lot).statut == StatutLot.EN_QUARANTAINE
        assert produit.stock_total == 10
        assert produit.stock_disponible == 6

    def test_la_quarantaine_est_idempotente(self):
        bus = bootstrap_test_bus()
        préparer_produit(bus, [(4, date(2024, 11, 15))])
        bus.handle(commands.MettreEnQuarantaineLotsExpirés())
        entrées_avant = len(bus.uow.audit.entrées)

        résultat = bus.handle(commands.MettreEnQuarantaineLotsExpirés())[0]

        assert résultat.mis_en_quarantaine == 0
        assert len(bus.uow.audit.entrées) == entrées_avant

    def test_un_échec_n_interrompt_pas_le_balayage(self):
        uow = FakeUnitOfWork(FakeRepositoryAvecLotFantôme())
        bus = bootstrap_test_bus(uow)
        préparer_produit(bus, [(4, date(2024, 11, 15))])

        résultat = bus.handle(commands.MettreEnQuarantaineLotsExpirés())[0]

        assert résultat == model.RésultatQuarantaine(mis_en_quarantaine=1, échecs=1)

    def test_une_vente_ne_touche_plus_un_lot_en_quarantaine(self):
        bus = bootstrap_test_bus()
        préparer_produit(bus, [(4, date(2024, 11, 15)), (6, date(2025, 6, 1))])
        bus.handle(commands.MettreEnQuarantaineLotsExpirés())

        with pytest.raises(model.StockInsuffisant) as excinfo:
            bus.handle(commands.PlanifierAllocation("AMOXICILLINE-1G", 7))

        assert excinfo.value.disponible == 6


class TestPurgeAudit:
    def _journal_avec_entrées(self, uow: FakeUnitOfWork) -> None:
        for jours, protégée in [(200, False), (100, False), (100, True), (50, False)]:
            uow.audit.add(
                EntréeAudit(
                    "AMOXICILLINE-1G", None, TypeAction.AJUSTEMENT_MANUEL, 10, 9,
                    horodatage=MAINTENANT - timedelta(days=jours),
                    protégée=protégée,
                )
            )

    def test_la_purge_respecte_le_plancher_de_rétention(self):
        uow = FakeUnitOfWork()
        bus = bootstrap_test_bus(uow)
        self._journal_avec_entrées(uow)

        purgées = bus.handle(commands.PurgerJournalAudit(jours_rétention=10))[0]

        assert purgées == 2
        assert len(uow.audit.entrées) == 2

    def test_les_entrées_protégées_sont_conservées(self):
        uow = FakeUnitOfWork()
        bus = bootstrap_test_bus(uow)
        self._journal_avec_entrées(uow)

        bus.handle(commands.PurgerJournalAudit(jours_rétention=150))

        assert [e.protégée for e in uow.audit.entrées] == [False, True, False]

    def test_rétention_négative_refusée(self):
        bus = bootstrap_test_bus()
        with pytest.raises(ValueError):
            bus.handle(commands.PurgerJournalAudit(jours_rétention=-1))


class TestMaintenance:
    def test_maintenance_complète(self):
        uow = FakeUnitOfWork()
        bus = bootstrap_test_bus(uow)
        préparer_produit(bus, [(4, date(2024, 11, 15)), (6, date(2025, 6, 1))])
        uow.audit.add(
            EntréeAudit(
                "AMOXICILLINE-1G", None, TypeAction.AJUSTEMENT_MANUEL, 10, 9,
                horodatage=MAINTENANT - timedelta(days=400),
            )
        )

        résultat = bus.handle(commands.ExécuterMaintenance(jours_rétention=365))[0]

        assert résultat == model.RésultatMaintenance(mis_en_quarantaine=1, purgées=1, échecs=0)


# --- Tests des notifications ---


class TestNotifications:
    def test_alerte_quand_le_stock_passe_sous_le_seuil(self):
        bus = bootstrap_test_bus()
        préparer_produit(bus, [(10, None)], seuil=5)

        vendre(bus, "AMOXICILLINE-1G", 6)

        notifications = bus.dependencies["notifications"]
        assert len(notifications.envoyées) == 1
        destination, message = notifications.envoyées[0]
        assert destination == "stock@example.com"
        assert "AMOXICILLINE-1G" in message

    def test_alerte_de_mise_en_quarantaine(self):
        bus = bootstrap_test_bus()
        préparer_produit(bus, [(4, date(2024, 11, 15))])

        bus.handle(commands.MettreEnQuarantaineLotsExpirés())

        notifications = bus.dependencies["notifications"]
        assert any("quarantaine" in message for _, message in notifications.envoyées)

    def test_aucune_alerte_si_la_vente_échoue(self):
        bus = bootstrap_test_bus()
        préparer_produit(bus, [(10, None)], seuil=5)
        plan = bus.handle(commands.PlanifierAllocation("AMOXICILLINE-1G", 6))[0]
        bus.handle(commands.AjusterLot(plan.lignes[0].id_lot, 9, "casse"))
        bus.dependencies["notifications"].envoyées.clear()

        with pytest.raises(model.ModificationConcurrente):
            bus.handle(commands.AppliquerAllocation(
                model.PlanAllocation("AMOXICILLINE-1G", 10, (model.LigneAllocation(plan.lignes[0].id_lot, 10),))
            ))

        assert bus.dependencies["notifications"].envoyées == []
