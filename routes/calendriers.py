"""
routes/calendriers.py - Calendriers scolaires et jours fériés
"""

from flask import Blueprint, jsonify, request
from flask_login import login_required
from models import CalendrierScolaire
from policies.rbac import portee_requise, peut_gerer_ecole, PorteeAdmin, PorteeEcole
from services import calendrier as service
from services.exceptions import RessourceIntrouvable, ViolationInvariant
from services.horloge import lire_date

calendriers_bp = Blueprint('calendriers', __name__)


def calendrier_to_dict(calendrier):
    return {
        'id': calendrier.id,
        'pays_code': calendrier.pays_code,
        'annee_scolaire': calendrier.annee_scolaire,
        'description': calendrier.description,
        'date_rentree': calendrier.date_rentree.isoformat(),
        'date_fin_annee': calendrier.date_fin_annee.isoformat(),
        'periodes_vacances': calendrier.periodes_vacances or [],
        'actif': calendrier.actif,
    }


def jour_ferie_to_dict(jour_ferie):
    return {
        'id': jour_ferie.id,
        'calendrier_id': jour_ferie.calendrier_id,
        'ecole_id': jour_ferie.ecole_id,
        'intitule_journee': jour_ferie.intitule_journee,
        'date': jour_ferie.date.isoformat(),
        'recurrent': jour_ferie.recurrent,
        'est_national': jour_ferie.est_national,
        'actif': jour_ferie.actif,
    }


def _lire_date_param(nom):
    valeur = request.args.get(nom)
    if not valeur:
        return None
    try:
        return lire_date(valeur)
    except ValueError:
        raise ViolationInvariant(f"Paramètre {nom} invalide (YYYY-MM-DD requis)")


def _exiger_ecole_autorisee(portee, ecole_id):
    if ecole_id is not None and not peut_gerer_ecole(portee, ecole_id):
        raise RessourceIntrouvable("École introuvable")


@calendriers_bp.route('/calendriers', methods=['POST'])
@login_required
@portee_requise(PorteeAdmin)
def create_calendrier(portee):
    """Créer un calendrier avec ses jours fériés par défaut"""
    calendrier = service.creer_calendrier(request.get_json(silent=True) or {})
    return jsonify({'success': True, 'calendrier': calendrier_to_dict(calendrier)}), 201


@calendriers_bp.route('/calendriers')
@login_required
def list_calendriers():
    query = CalendrierScolaire.query.order_by(CalendrierScolaire.date_rentree.desc())
    if request.args.get('pays_code'):
        query = query.filter(CalendrierScolaire.pays_code == request.args['pays_code'])
    return jsonify({'calendriers': [calendrier_to_dict(c) for c in query.all()]})


@calendriers_bp.route('/calendriers/<int:calendrier_id>/jours-feries')
@login_required
@portee_requise(PorteeAdmin, PorteeEcole)
def list_jours_feries(portee, calendrier_id):
    """
    Paramètres query :
    - est_national (true/false), ecole_id
    - debut, fin (YYYY-MM-DD)
    - vue=ecole : jours fériés effectifs de l'école (ses lignes remplacent les nationales)
    """
    ecole_id = request.args.get('ecole_id', type=int)
    if isinstance(portee, PorteeEcole):
        ecole_id = portee.ecole_id

    if request.args.get('vue') == 'ecole':
        if ecole_id is None:
            raise ViolationInvariant("ecole_id est requis pour la vue école")
        jours = service.calendrier_ecole(calendrier_id, ecole_id)
    else:
        est_national = request.args.get('est_national')
        jours = service.jours_feries_calendrier(
            calendrier_id,
            est_national=None if est_national is None else est_national.lower() == 'true',
            ecole_id=request.args.get('ecole_id', type=int),
            debut=_lire_date_param('debut'),
            fin=_lire_date_param('fin'),
        )
    return jsonify({'jours_feries': [jour_ferie_to_dict(j) for j in jours]})


@calendriers_bp.route('/calendriers/<int:calendrier_id>/jours-feries/bulk', methods=['POST'])
@login_required
@portee_requise(PorteeAdmin)
def bulk_jours_feries(portee, calendrier_id):
    data = request.get_json(silent=True) or {}
    crees = service.creer_jours_feries_bulk(calendrier_id, data.get('jours_feries') or [])
    return jsonify({'success': True, 'jours_feries': [jour_ferie_to_dict(j) for j in crees]}), 201


@calendriers_bp.route('/calendriers/<int:calendrier_id>/jours-ecole')
@login_required
@portee_requise(PorteeAdmin, PorteeEcole)
def jours_ecole(portee, calendrier_id):
    ecole_id = request.args.get('ecole_id', type=int)
    if isinstance(portee, PorteeEcole):
        ecole_id = portee.ecole_id
    return jsonify({
        'calendrier_id': calendrier_id,
        'ecole_id': ecole_id,
        'jours_ecole': service.compter_jours_ecole(calendrier_id, ecole_id),
    })


@calendriers_bp.route('/jours-feries', methods=['POST'])
@login_required
@portee_requise(PorteeAdmin, PorteeEcole)
def create_jour_ferie(portee):
    """Jour férié national (admin) ou propre à une école"""
    data = request.get_json(silent=True) or {}
    if isinstance(portee, PorteeEcole):
        data['ecole_id'] = portee.ecole_id
        data['est_national'] = False
    jour_ferie = service.creer_jour_ferie(data)
    return jsonify({'success': True, 'jour_ferie': jour_ferie_to_dict(jour_ferie)}), 201


@calendriers_bp.route('/jours-feries/<int:jour_ferie_id>', methods=['PUT'])
@login_required
@portee_requise(PorteeAdmin)
def update_jour_ferie(portee, jour_ferie_id):
    jour_ferie = service.modifier_jour_ferie(jour_ferie_id, request.get_json(silent=True) or {})
    return jsonify({'success': True, 'jour_ferie': jour_ferie_to_dict(jour_ferie)})


@calendriers_bp.route('/jours-feries/est-ferie')
@login_required
@portee_requise(PorteeAdmin, PorteeEcole)
def est_ferie(portee):
    jour = _lire_date_param('date')
    if jour is None:
        raise ViolationInvariant("Paramètre date requis")

    ecole_id = request.args.get('ecole_id', type=int)
    if isinstance(portee, PorteeEcole):
        ecole_id = portee.ecole_id
    _exiger_ecole_autorisee(portee, ecole_id)

    return jsonify({
        'date': jour.isoformat(),
        'est_ferie': service.est_jour_ferie(jour, ecole_id, request.args.get('calendrier_id', type=int)),
    })
