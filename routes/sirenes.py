"""
routes/sirenes.py - Poll des sirènes et gestion des programmations
"""

from flask import Blueprint, g, jsonify, request, current_app
from flask_login import login_required, current_user
from models import Programmation, Sirene
from policies.rbac import (
    get_programmations_query, portee_requise, peut_gerer_ecole,
    PorteeAdmin, PorteeEcole,
)
from policies.sirene_auth import sirene_auth_required
from services import programmations as service
from services.exceptions import RessourceIntrouvable, ViolationInvariant
from services.horloge import aujourdhui, lire_date

sirenes_bp = Blueprint('sirenes', __name__)


def programmation_to_dict(programmation):
    return {
        'id': programmation.id,
        'sirene_id': programmation.sirene_id,
        'ecole_id': programmation.ecole_id,
        'site_id': programmation.site_id,
        'abonnement_id': programmation.abonnement_id,
        'calendrier_id': programmation.calendrier_id,
        'nom_programmation': programmation.nom_programmation,
        'horaires_sonneries': programmation.horaires_sonneries,
        'jours_semaine': programmation.jours_semaine,
        'jours_feries_inclus': programmation.jours_feries_inclus,
        'jours_feries_exceptions': programmation.jours_feries_exceptions or [],
        'date_debut': programmation.date_debut.isoformat(),
        'date_fin': programmation.date_fin.isoformat(),
        'actif': programmation.actif,
        'chaine_programmee': programmation.chaine_programmee,
        'chaine_cryptee': programmation.chaine_cryptee,
        'updated_at': programmation.updated_at.isoformat() if programmation.updated_at else None,
    }


# ==================== POLL SIRÈNE (firmware) ====================

@sirenes_bp.route('/<numero_serie>/programmation')
@sirene_auth_required
def programmation_sirene(numero_serie):
    """
    Programmation courante de la sirène authentifiée par son token.

    404 explicite si aucune programmation active (pas de planning par défaut).
    """
    return jsonify({'success': True, 'data': service.programmation_pour_sirene(g.sirene)})


# ==================== PROGRAMMATIONS (comptes) ====================

def _sirene_visible(portee, sirene_id):
    sirene = Sirene.query.filter(Sirene.id == sirene_id, Sirene.deleted_at.is_(None)).first()
    if sirene is None or sirene.site is None or not peut_gerer_ecole(portee, sirene.site.ecole_id):
        raise RessourceIntrouvable("Sirène introuvable")
    return sirene


@sirenes_bp.route('/<int:sirene_id>/programmations', methods=['GET'])
@login_required
@portee_requise(PorteeAdmin, PorteeEcole)
def list_programmations(portee, sirene_id):
    """
    Paramètres query :
    - page, per_page
    - date (YYYY-MM-DD) : ne renvoie que les horaires effectifs ce jour-là
    """
    _sirene_visible(portee, sirene_id)

    if request.args.get('date'):
        try:
            jour = lire_date(request.args['date'])
        except ValueError:
            raise ViolationInvariant("Paramètre date invalide (YYYY-MM-DD requis)")
        return jsonify({
            'date': jour.isoformat(),
            'programmations': [
                {'id': p.id, 'nom_programmation': p.nom_programmation, 'horaires': horaires}
                for p, horaires in service.programmations_effectives_pour_sirene(sirene_id, jour)
            ],
        })

    page = request.args.get('page', 1, type=int)
    per_page = request.args.get('per_page', current_app.config['ITEMS_PER_PAGE'], type=int)
    filtered_query = get_programmations_query(portee, service.programmations_sirene(sirene_id))
    pagination = filtered_query.paginate(page=page, per_page=per_page, error_out=False)

    return jsonify({
        'programmations': [programmation_to_dict(p) for p in pagination.items],
        'pagination': {
            'page': pagination.page,
            'per_page': pagination.per_page,
            'total': pagination.total,
            'pages': pagination.pages
        }
    })


@sirenes_bp.route('/<int:sirene_id>/programmations', methods=['POST'])
@login_required
@portee_requise(PorteeAdmin, PorteeEcole)
def create_programmation(portee, sirene_id):
    _sirene_visible(portee, sirene_id)
    data = request.get_json(silent=True) or {}
    programmation, avertissements = service.creer_programmation(sirene_id, data, current_user.id)
    return jsonify({
        'success': True,
        'programmation': programmation_to_dict(programmation),
        'avertissements': avertissements,
    }), 201


@sirenes_bp.route('/<int:sirene_id>/programmations/<int:programmation_id>')
@login_required
@portee_requise(PorteeAdmin, PorteeEcole)
def detail_programmation(portee, sirene_id, programmation_id):
    base_query = Programmation.query.filter(
        Programmation.id == programmation_id,
        Programmation.sirene_id == sirene_id,
        Programmation.deleted_at.is_(None),
    )
    programmation = get_programmations_query(portee, base_query).first()
    if programmation is None:
        raise RessourceIntrouvable("Programmation introuvable")

    try:
        jour = lire_date(request.args['date']) if request.args.get('date') else aujourdhui()
    except ValueError:
        raise ViolationInvariant("Paramètre date invalide (YYYY-MM-DD requis)")

    resultat = programmation_to_dict(programmation)
    resultat['date'] = jour.isoformat()
    resultat['horaires_effectifs'] = service.programmation_effective(programmation, jour)
    return jsonify({'success': True, 'programmation': resultat})


@sirenes_bp.route('/<int:sirene_id>/programmations/<int:programmation_id>', methods=['PUT'])
@login_required
@portee_requise(PorteeAdmin, PorteeEcole)
def update_programmation(portee, sirene_id, programmation_id):
    _sirene_visible(portee, sirene_id)
    data = request.get_json(silent=True) or {}
    programmation, avertissements = service.modifier_programmation(programmation_id, data, sirene_id)
    return jsonify({
        'success': True,
        'programmation': programmation_to_dict(programmation),
        'avertissements': avertissements,
    })


@sirenes_bp.route('/<int:sirene_id>/programmations/<int:programmation_id>', methods=['DELETE'])
@login_required
@portee_requise(PorteeAdmin, PorteeEcole)
def delete_programmation(portee, sirene_id, programmation_id):
    _sirene_visible(portee, sirene_id)
    service.supprimer_programmation(programmation_id, sirene_id)
    return jsonify({'success': True, 'message': 'Programmation supprimée'})
