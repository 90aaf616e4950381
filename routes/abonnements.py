"""
routes/abonnements.py - Cycle de vie des abonnements (API JSON)
"""

from flask import Blueprint, jsonify, request, current_app
from flask_login import login_required
from models import Abonnement
from policies.rbac import (
    get_abonnements_query, portee_requise, peut_gerer_ecole,
    PorteeAdmin, PorteeEcole,
)
from services import abonnements as service, paiements as paiements_service, tokens
from services.exceptions import RessourceIntrouvable

abonnements_bp = Blueprint('abonnements', __name__)


def abonnement_to_dict(abonnement):
    token = tokens.token_actif(abonnement.id)
    return {
        'id': abonnement.id,
        'numero_abonnement': abonnement.numero_abonnement,
        'sirene_id': abonnement.sirene_id,
        'numero_serie': abonnement.sirene.numero_serie if abonnement.sirene else None,
        'ecole_id': abonnement.ecole_id,
        'site_id': abonnement.site_id,
        'parent_abonnement_id': abonnement.parent_abonnement_id,
        'date_debut': abonnement.date_debut.isoformat(),
        'date_fin': abonnement.date_fin.isoformat(),
        'montant': float(abonnement.montant or 0),
        'statut': abonnement.statut,
        'auto_renouvellement': abonnement.auto_renouvellement,
        'est_vivant': abonnement.est_vivant,
        'notes': abonnement.notes,
        'token_actif': token.token_crypte if token else None,
        'created_at': abonnement.created_at.isoformat() if abonnement.created_at else None,
    }


def _charger_visible(portee, abonnement_id):
    base_query = Abonnement.query.filter(Abonnement.id == abonnement_id,
                                         Abonnement.deleted_at.is_(None))
    abonnement = get_abonnements_query(portee, base_query).first()
    if abonnement is None:
        raise RessourceIntrouvable("Abonnement introuvable")
    return abonnement


@abonnements_bp.route('', methods=['GET'])
@login_required
@portee_requise()
def list_abonnements(portee):
    """
    Liste des abonnements (filtrée selon la portée du compte)

    Paramètres query :
    - page, per_page
    - statut, sirene_id
    """
    page = request.args.get('page', 1, type=int)
    per_page = request.args.get('per_page', current_app.config['ITEMS_PER_PAGE'], type=int)
    statut = request.args.get('statut')
    sirene_id = request.args.get('sirene_id', type=int)

    base_query = Abonnement.query.filter(Abonnement.deleted_at.is_(None)) \
        .order_by(Abonnement.created_at.desc())
    filtered_query = get_abonnements_query(portee, base_query)

    if statut:
        filtered_query = filtered_query.filter(Abonnement.statut == statut)
    if sirene_id:
        filtered_query = filtered_query.filter(Abonnement.sirene_id == sirene_id)

    pagination = filtered_query.paginate(page=page, per_page=per_page, error_out=False)

    return jsonify({
        'abonnements': [abonnement_to_dict(a) for a in pagination.items],
        'pagination': {
            'page': pagination.page,
            'per_page': pagination.per_page,
            'total': pagination.total,
            'pages': pagination.pages
        }
    })


@abonnements_bp.route('', methods=['POST'])
@login_required
@portee_requise(PorteeAdmin, PorteeEcole)
def create(portee):
    """Créer un abonnement (en attente de paiement)"""
    data = request.get_json(silent=True) or {}
    if isinstance(portee, PorteeEcole):
        data['ecole_id'] = portee.ecole_id

    abonnement = service.creer_abonnement(data)
    return jsonify({'success': True, 'abonnement': abonnement_to_dict(abonnement)}), 201


@abonnements_bp.route('/<int:abonnement_id>')
@login_required
@portee_requise()
def detail(portee, abonnement_id):
    abonnement = _charger_visible(portee, abonnement_id)
    return jsonify({'success': True, 'abonnement': abonnement_to_dict(abonnement)})


# ==================== TRANSITIONS ====================

@abonnements_bp.route('/<int:abonnement_id>/activer', methods=['POST'])
@login_required
@portee_requise(PorteeAdmin)
def activer(portee, abonnement_id):
    abonnement = service.activer(abonnement_id)
    return jsonify({'success': True, 'abonnement': abonnement_to_dict(abonnement)})


@abonnements_bp.route('/<int:abonnement_id>/suspendre', methods=['POST'])
@login_required
@portee_requise(PorteeAdmin)
def suspendre(portee, abonnement_id):
    data = request.get_json(silent=True) or {}
    abonnement = service.suspendre(abonnement_id, data.get('raison'))
    return jsonify({'success': True, 'abonnement': abonnement_to_dict(abonnement)})


@abonnements_bp.route('/<int:abonnement_id>/reactiver', methods=['POST'])
@login_required
@portee_requise(PorteeAdmin)
def reactiver(portee, abonnement_id):
    abonnement = service.reactiver(abonnement_id)
    return jsonify({'success': True, 'abonnement': abonnement_to_dict(abonnement)})


@abonnements_bp.route('/<int:abonnement_id>/annuler', methods=['POST'])
@login_required
@portee_requise(PorteeAdmin, PorteeEcole)
def annuler(portee, abonnement_id):
    _charger_visible(portee, abonnement_id)
    data = request.get_json(silent=True) or {}
    abonnement = service.annuler(abonnement_id, data.get('raison'))
    return jsonify({'success': True, 'abonnement': abonnement_to_dict(abonnement)})


@abonnements_bp.route('/<int:abonnement_id>/renouveler', methods=['POST'])
@login_required
@portee_requise(PorteeAdmin, PorteeEcole)
def renouveler(portee, abonnement_id):
    _charger_visible(portee, abonnement_id)
    nouveau = service.renouveler(abonnement_id)
    return jsonify({'success': True, 'abonnement': abonnement_to_dict(nouveau)}), 201


@abonnements_bp.route('/<int:abonnement_id>/regenerer-token', methods=['POST'])
@login_required
@portee_requise(PorteeAdmin)
def regenerer_token(portee, abonnement_id):
    token = tokens.regenerer_token(abonnement_id)
    return jsonify({
        'success': True,
        'token': token.token_crypte,
        'date_expiration': token.date_expiration.isoformat(),
    })


@abonnements_bp.route('/<int:abonnement_id>', methods=['DELETE'])
@login_required
@portee_requise(PorteeAdmin)
def delete(portee, abonnement_id):
    service.supprimer(abonnement_id)
    return jsonify({'success': True, 'message': 'Abonnement supprimé'})


@abonnements_bp.route('/<int:abonnement_id>/paiement', methods=['POST'])
@login_required
@portee_requise(PorteeAdmin, PorteeEcole)
def initier_paiement(portee, abonnement_id):
    """Obtient l'URL de paiement CinetPay ; l'activation arrive par notification"""
    abonnement = _charger_visible(portee, abonnement_id)
    if not peut_gerer_ecole(portee, abonnement.ecole_id):
        raise RessourceIntrouvable("Abonnement introuvable")

    data = request.get_json(silent=True) or {}
    paiement, payment_url = paiements_service.initier_paiement(abonnement_id, data.get('return_url'))
    return jsonify({
        'success': True,
        'transaction_id': paiement.numero_transaction,
        'payment_url': payment_url,
    }), 201


# ==================== CALCULS ====================

@abonnements_bp.route('/<int:abonnement_id>/jours-restants')
@login_required
@portee_requise()
def jours_restants(portee, abonnement_id):
    abonnement = _charger_visible(portee, abonnement_id)
    return jsonify({'jours_restants': service.jours_restants(abonnement)})


@abonnements_bp.route('/<int:abonnement_id>/est-valide')
@login_required
@portee_requise()
def est_valide(portee, abonnement_id):
    abonnement = _charger_visible(portee, abonnement_id)
    return jsonify({'est_valide': service.est_valide(abonnement)})


@abonnements_bp.route('/<int:abonnement_id>/prix-renouvellement')
@login_required
@portee_requise()
def prix_renouvellement(portee, abonnement_id):
    abonnement = _charger_visible(portee, abonnement_id)
    return jsonify({'prix': float(service.prix_renouvellement(abonnement))})


@abonnements_bp.route('/expirant-bientot')
@login_required
@portee_requise(PorteeAdmin)
def expirant_bientot(portee):
    jours = request.args.get('jours', 30, type=int)
    return jsonify({
        'abonnements': [abonnement_to_dict(a) for a in service.expirant_bientot(jours)]
    })


@abonnements_bp.route('/expires-non-traites')
@login_required
@portee_requise(PorteeAdmin)
def expires_non_traites(portee):
    """ACTIF avec date_fin passée, en attente du prochain marquer-expires"""
    return jsonify({
        'abonnements': [abonnement_to_dict(a) for a in service.expires_non_traites()]
    })


@abonnements_bp.route('/ecoles/<int:ecole_id>/actif')
@login_required
@portee_requise(PorteeAdmin, PorteeEcole)
def abonnement_actif_ecole(portee, ecole_id):
    if not peut_gerer_ecole(portee, ecole_id):
        raise RessourceIntrouvable("École introuvable")
    abonnement = service.abonnement_actif_ecole(ecole_id)
    return jsonify({'abonnement': abonnement_to_dict(abonnement) if abonnement else None})


@abonnements_bp.route('/stats/global')
@login_required
@portee_requise(PorteeAdmin, PorteeEcole)
def statistiques(portee):
    return jsonify(service.statistiques(get_abonnements_query(portee, Abonnement.query)))


# ==================== TÂCHES PÉRIODIQUES ====================

@abonnements_bp.route('/cron/marquer-expires', methods=['POST'])
@login_required
@portee_requise(PorteeAdmin)
def cron_marquer_expires(portee):
    return jsonify({'success': True, 'expires': service.marquer_expires()})


@abonnements_bp.route('/cron/auto-renouveler', methods=['POST'])
@login_required
@portee_requise(PorteeAdmin)
def cron_auto_renouveler(portee):
    crees = service.auto_renouveler()
    return jsonify({'success': True, 'renouveles': [a.id for a in crees]})
