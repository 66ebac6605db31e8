"""
Point d'entrée Flask.

L'API Flask est un thin adapter : elle se contente de
convertir les requêtes HTTP en commands, les envoie au
message bus, et convertit les résultats en réponses HTTP.

L'API ne contient aucune logique métier.
"""

from __future__ import annotations

import logging
from dataclasses import asdict
from datetime import date, datetime
from decimal import Decimal

from flask import Flask, jsonify, request

from inventaire import config
from inventaire.adapters import orm
from inventaire.domain import commands, model
from inventaire.domain.statut import StatutLot
from inventaire.service_layer import bootstrap, handlers
from inventaire.views import views

logging.basicConfig(level=config.get_log_level())

app = Flask(__name__)
bus = bootstrap.bootstrap()


def _date(valeur: str | None) -> date | None:
    if valeur is None:
        return None
    return datetime.fromisoformat(valeur).date()


def _json(valeur):
    """Rend sérialisables les dates et décimaux des résultats du domaine."""
    if isinstance(valeur, dict):
        return {k: _json(v) for k, v in valeur.items()}
    if isinstance(valeur, (list, tuple)):
        return [_json(v) for v in valeur]
    if isinstance(valeur, (date, datetime)):
        return valeur.isoformat()
    if isinstance(valeur, Decimal):
        return str(valeur)
    if isinstance(valeur, StatutLot):
        return valeur.value
    return valeur


def _erreur(message: str, status: int, **details):
    return jsonify({"message": message, **details}), status


@app.errorhandler(model.QuantitéInvalide)
@app.errorhandler(model.QuantitéNégative)
@app.errorhandler(model.NuméroLotDupliqué)
def erreur_de_saisie(e: model.ErreurInventaire):
    return _erreur(str(e), 400)


@app.errorhandler(model.ProduitIntrouvable)
@app.errorhandler(model.LotIntrouvable)
@app.errorhandler(handlers.VenteIntrouvable)
def introuvable(e: Exception):
    return _erreur(str(e), 404)


@app.errorhandler(model.StockInsuffisant)
def stock_insuffisant(e: model.StockInsuffisant):
    return _erreur(str(e), 409, disponible=e.disponible, demandé=e.demandé)


@app.errorhandler(model.ModificationConcurrente)
def modification_concurrente(e: model.ModificationConcurrente):
    return _erreur("Stock modifié, veuillez réessayer", 409, id_lot=e.id_lot)


@app.errorhandler(handlers.VenteDéjàAnnulée)
def vente_déjà_annulée(e: handlers.VenteDéjàAnnulée):
    return _erreur(str(e), 409)


@app.route("/produits", methods=["POST"])
def enregistrer_produit_endpoint():
    """
    POST /produits
    Body JSON : { id_produit, nom, seuil_réapprovisionnement?, actif? }
    """
    data = request.json
    bus.handle(
        commands.EnregistrerProduit(
            id_produit=data["id_produit"],
            nom=data["nom"],
            seuil_réapprovisionnement=data.get("seuil_réapprovisionnement", 0),
            actif=data.get("actif", True),
        )
    )
    return "OK", 201


@app.route("/lots", methods=["POST"])
def recevoir_lot_endpoint():
    """
    POST /lots
    Body JSON : { id_produit, quantité, date_expiration?, numéro_lot?,
                  coût_unitaire?, fournisseur?, id_acteur? }

    Réception d'un lot. Retourne l'identifiant et le numéro du lot.
    """
    data = request.json
    coût = data.get("coût_unitaire")
    cmd = commands.RecevoirLot(
        id_produit=data["id_produit"],
        quantité=data["quantité"],
        date_expiration=_date(data.get("date_expiration")),
        numéro_lot=data.get("numéro_lot"),
        coût_unitaire=Decimal(str(coût)) if coût is not None else None,
        fournisseur=data.get("fournisseur"),
        id_acteur=data.get("id_acteur"),
    )
    lot = bus.handle(cmd).pop(0)
    return jsonify(_json(asdict(lot))), 201


@app.route("/produits/<id_produit>/lots", methods=["GET"])
def lots_endpoint(id_produit: str):
    """GET /produits/<id>/lots?statut=expiring_soon"""
    statut = request.args.get("statut")
    try:
        filtre = StatutLot(statut) if statut else None
    except ValueError:
        return _erreur(f"Statut inconnu : {statut}", 400)
    horloge = bus.dependencies["horloge"]
    result = views.lots_du_produit(
        id_produit,
        bus.uow,
        aujourdhui=horloge.aujourdhui(),
        statut=filtre,
        jours_alerte=config.get_jours_alerte_expiration(),
    )
    return jsonify(result), 200


@app.route("/allocations/plan", methods=["POST"])
def planifier_endpoint():
    """
    POST /allocations/plan
    Body JSON : { id_produit, quantité }

    Calcule le plan FEFO sans rien déduire.
    """
    data = request.json
    plan = bus.handle(
        commands.PlanifierAllocation(id_produit=data["id_produit"], quantité=data["quantité"])
    ).pop(0)
    return jsonify(_json(asdict(plan))), 200


@app.route("/ventes", methods=["POST"])
def appliquer_endpoint():
    """
    POST /ventes
    Body JSON : { plan: {id_produit, quantité_demandée, lignes: [{id_lot, quantité}]},
                  id_référence?, id_acteur? }
    """
    data = request.json
    plan_data = data["plan"]
    plan = model.PlanAllocation(
        id_produit=plan_data["id_produit"],
        quantité_demandée=plan_data["quantité_demandée"],
        lignes=tuple(
            model.LigneAllocation(id_lot=l["id_lot"], quantité=l["quantité"])
            for l in plan_data["lignes"]
        ),
    )
    résultat = bus.handle(
        commands.AppliquerAllocation(
            plan=plan,
            id_référence=data.get("id_référence"),
            id_acteur=data.get("id_acteur"),
        )
    ).pop(0)
    return jsonify(_json(asdict(résultat))), 201


@app.route("/ventes/<id_reference>/annulation", methods=["POST"])
def annuler_vente_endpoint(id_reference: str):
    data = request.get_json(silent=True) or {}
    résultat = bus.handle(
        commands.AnnulerVente(
            id_référence=id_reference,
            id_acteur=data.get("id_acteur"),
            motif=data.get("motif", ""),
        )
    ).pop(0)
    return jsonify(_json(asdict(résultat))), 200


@app.route("/lots/<id_lot>", methods=["PATCH"])
def ajuster_lot_endpoint(id_lot: str):
    """
    PATCH /lots/<id>
    Body JSON : { nouvelle_quantité, motif, id_acteur? }
    """
    data = request.json
    résultat = bus.handle(
        commands.AjusterLot(
            id_lot=id_lot,
            nouvelle_quantité=data["nouvelle_quantité"],
            motif=data["motif"],
            id_acteur=data.get("id_acteur"),
        )
    ).pop(0)
    return jsonify(_json(asdict(résultat))), 200


@app.route("/maintenance", methods=["POST"])
def maintenance_endpoint():
    data = request.get_json(silent=True) or {}
    résultat = bus.handle(
        commands.ExécuterMaintenance(jours_rétention=data.get("jours_rétention"))
    ).pop(0)
    return jsonify(asdict(résultat)), 200


@app.route("/produits/<id_produit>/audit", methods=["GET"])
def audit_endpoint(id_produit: str):
    return jsonify(views.historique_audit(id_produit, bus.uow)), 200


@app.route("/produits/sous-seuil", methods=["GET"])
def sous_seuil_endpoint():
    return jsonify(views.produits_sous_seuil(bus.uow)), 200


@app.route("/lots/expirant", methods=["GET"])
def lots_expirant_endpoint():
    jours = request.args.get("jours", default=config.get_jours_alerte_expiration(), type=int)
    horloge = bus.dependencies["horloge"]
    return jsonify(
        views.lots_expirant(
            horloge.aujourdhui(), jours, bus.uow, jours_alerte=config.get_jours_alerte_expiration()
        )
    ), 200


@app.route("/analytique/lots", methods=["GET"])
def analytique_endpoint():
    horloge = bus.dependencies["horloge"]
    return jsonify(
        views.analytique_lots(
            horloge.aujourdhui(), bus.uow, jours_alerte=config.get_jours_alerte_expiration()
        )
    ), 200


@app.cli.command("init-db")
def init_db() -> None:
    """Crée les tables de l'inventaire dans la base configurée."""
    orm.metadata.create_all(bus.uow.session_factory.kw["bind"])
