"""
routes/maintenance.py - Pannes, ordres de mission, candidatures, interventions
"""

from flask import Blueprint, jsonify, request, current_app
from flask_login import login_required, current_user
from models import Sirene, Panne, OrdreMission, Intervention, RapportIntervention
from policies.rbac import (
    get_pannes_query, get_ordres_mission_query, get_interventions_query, get_rapports_query,
    portee_requise, peut_gerer_ecole,
    PorteeAdmin, PorteeEcole, PorteeTechnicien,
)
from services import maintenance as service
from services.exceptions import RessourceIntrouvable

maintenance_bp = Blueprint('maintenance', __name__)


def _iso(valeur):
    return valeur.isoformat() if valeur else None


def panne_to_dict(panne):
    return {
        'id': panne.id,
        'numero_panne': panne.numero_panne,
        'sirene_id': panne.sirene_id,
        'ecole_id': panne.ecole_id,
        'site_id': panne.site_id,
        'description': panne.description,
        'priorite': panne.priorite,
        'statut': panne.statut,
        'date_declaration': _iso(panne.date_declaration),
        'date_validation': _iso(panne.date_validation),
        'date_cloture': _iso(panne.date_cloture),
    }


def ordre_to_dict(ordre):
    return {
        'id': ordre.id,
        'panne_id': ordre.panne_id,
        'numero_ordre': ordre.numero_ordre,
        'statut': ordre.statut,
        'nombre_techniciens_requis': ordre.nombre_techniciens_requis,
        'nombre_techniciens_acceptes': ordre.nombre_techniciens_acceptes,
        'candidature_cloturee': ordre.candidature_cloturee,
        'date_debut_candidature': _iso(ordre.date_debut_candidature),
        'date_fin_candidature': _iso(ordre.date_fin_candidature),
        'commentaire': ordre.commentaire,
    }


def candidature_to_dict(candidature):
    return {
        'id': candidature.id,
        'ordre_mission_id': candidature.ordre_mission_id,
        'technicien_id': candidature.technicien_id,
        'statut_candidature': candidature.statut_candidature,
        'motivation': candidature.motivation,
        'is_suspended': candidature.is_suspended,
        'date_candidature': _iso(candidature.date_candidature),
    }


def intervention_to_dict(intervention):
    return {
        'id': intervention.id,
        'panne_id': intervention.panne_id,
        'ordre_mission_id': intervention.ordre_mission_id,
        'technicien_id': intervention.technicien_id,
        'statut': intervention.statut,
        'date_assignation': _iso(intervention.date_assignation),
        'date_debut': _iso(intervention.date_debut),
        'date_fin': _iso(intervention.date_fin),
        'note_ecole': intervention.note_ecole,
    }


def rapport_to_dict(rapport):
    return {
        'id': rapport.id,
        'intervention_id': rapport.intervention_id,
        'technicien_id': rapport.technicien_id,
        'est_collectif': rapport.est_collectif,
        'rapport': rapport.rapport,
        'diagnostic': rapport.diagnostic,
        'travaux_effectues': rapport.travaux_effectues,
        'resultat': rapport.resultat,
        'statut': rapport.statut,
        'review_note': rapport.review_note,
    }


def avis_to_dict(avis):
    return {
        'id': avis.id,
        'intervention_id': avis.intervention_id,
        'ordre_mission_id': avis.ordre_mission_id,
        'note': avis.note,
        'commentaire': avis.commentaire,
    }


def _paginer(query):
    page = request.args.get('page', 1, type=int)
    per_page = request.args.get('per_page', current_app.config['ITEMS_PER_PAGE'], type=int)
    pagination = query.paginate(page=page, per_page=per_page, error_out=False)
    return pagination, {
        'page': pagination.page,
        'per_page': pagination.per_page,
        'total': pagination.total,
        'pages': pagination.pages
    }


def _intervention_visible(portee, intervention_id):
    base_query = Intervention.query.filter(Intervention.id == intervention_id)
    intervention = get_interventions_query(portee, base_query).first()
    if intervention is None:
        raise RessourceIntrouvable("Intervention introuvable")
    return intervention


# ==================== PANNES ====================

@maintenance_bp.route('/pannes/sirenes/<int:sirene_id>/declarer', methods=['POST'])
@login_required
@portee_requise(PorteeAdmin, PorteeEcole)
def declarer_panne(portee, sirene_id):
    sirene = Sirene.query.filter(Sirene.id == sirene_id, Sirene.deleted_at.is_(None)).first()
    if sirene is None or (sirene.site is not None
                          and not peut_gerer_ecole(portee, sirene.site.ecole_id)):
        raise RessourceIntrouvable("Sirène introuvable")

    panne = service.declarer_panne(sirene_id, request.get_json(silent=True) or {}, current_user.id)
    return jsonify({'success': True, 'panne': panne_to_dict(panne)}), 201


@maintenance_bp.route('/pannes')
@login_required
@portee_requise()
def list_pannes(portee):
    """
    Paramètres query :
    - page, per_page
    - statut
    """
    query = get_pannes_query(portee, Panne.query.order_by(Panne.date_declaration.desc()))
    if request.args.get('statut'):
        query = query.filter(Panne.statut == request.args['statut'])

    pagination, meta = _paginer(query)
    return jsonify({'pannes': [panne_to_dict(p) for p in pagination.items], 'pagination': meta})


@maintenance_bp.route('/pannes/<int:panne_id>/valider', methods=['PUT'])
@login_required
@portee_requise(PorteeAdmin)
def valider_panne(portee, panne_id):
    panne, ordre = service.valider_panne(panne_id, current_user.id, request.get_json(silent=True) or {})
    return jsonify({
        'success': True,
        'panne': panne_to_dict(panne),
        'ordre_mission': ordre_to_dict(ordre),
    })


@maintenance_bp.route('/pannes/<int:panne_id>/cloturer', methods=['PUT'])
@login_required
@portee_requise(PorteeAdmin)
def cloturer_panne(portee, panne_id):
    panne = service.cloturer_panne(panne_id)
    return jsonify({'success': True, 'panne': panne_to_dict(panne)})


# ==================== ORDRES DE MISSION ====================

@maintenance_bp.route('/ordres-mission')
@login_required
@portee_requise()
def list_ordres_mission(portee):
    query = get_ordres_mission_query(portee, OrdreMission.query.order_by(OrdreMission.id.desc()))
    if request.args.get('ouverts') == 'true':
        query = query.filter(OrdreMission.candidature_cloturee.is_(False))

    pagination, meta = _paginer(query)
    return jsonify({
        'ordres_mission': [ordre_to_dict(o) for o in pagination.items],
        'pagination': meta,
    })


@maintenance_bp.route('/ordres-mission/<int:ordre_id>/candidatures', methods=['POST'])
@login_required
@portee_requise(PorteeTechnicien)
def soumettre_candidature(portee, ordre_id):
    data = request.get_json(silent=True) or {}
    candidature = service.soumettre_candidature(ordre_id, portee.technicien_id, data.get('motivation'))
    return jsonify({'success': True, 'candidature': candidature_to_dict(candidature)}), 201


@maintenance_bp.route('/ordres-mission/<int:ordre_id>/candidatures')
@login_required
@portee_requise(PorteeAdmin)
def list_candidatures(portee, ordre_id):
    ordre = OrdreMission.query.get_or_404(ordre_id)
    return jsonify({'candidatures': [candidature_to_dict(c) for c in ordre.candidatures]})


@maintenance_bp.route('/ordres-mission/<int:ordre_id>/cloturer-candidatures', methods=['PUT'])
@login_required
@portee_requise(PorteeAdmin)
def cloturer_candidatures(portee, ordre_id):
    ordre = service.cloturer_candidatures(ordre_id, current_user.id)
    return jsonify({'success': True, 'ordre_mission': ordre_to_dict(ordre)})


@maintenance_bp.route('/ordres-mission/<int:ordre_id>/rouvrir-candidatures', methods=['PUT'])
@login_required
@portee_requise(PorteeAdmin)
def rouvrir_candidatures(portee, ordre_id):
    ordre = service.rouvrir_candidatures(ordre_id)
    return jsonify({'success': True, 'ordre_mission': ordre_to_dict(ordre)})


@maintenance_bp.route('/ordres-mission/<int:ordre_id>/avis', methods=['POST'])
@login_required
@portee_requise(PorteeEcole)
def noter_ordre_mission(portee, ordre_id):
    data = request.get_json(silent=True) or {}
    avis = service.noter_ordre_mission(ordre_id, portee.ecole_id, data.get('note'), data.get('commentaire'))
    return jsonify({'success': True, 'avis': avis_to_dict(avis)}), 201


# ==================== CANDIDATURES ====================

@maintenance_bp.route('/candidatures/<int:candidature_id>/accepter', methods=['PUT'])
@login_required
@portee_requise(PorteeAdmin)
def accepter_candidature(portee, candidature_id):
    candidature, intervention = service.accepter_candidature(candidature_id)
    return jsonify({
        'success': True,
        'candidature': candidature_to_dict(candidature),
        'intervention': intervention_to_dict(intervention),
    })


@maintenance_bp.route('/candidatures/<int:candidature_id>/refuser', methods=['PUT'])
@login_required
@portee_requise(PorteeAdmin)
def refuser_candidature(portee, candidature_id):
    candidature = service.refuser_candidature(candidature_id)
    return jsonify({'success': True, 'candidature': candidature_to_dict(candidature)})


@maintenance_bp.route('/candidatures/<int:candidature_id>/retirer', methods=['PUT'])
@login_required
@portee_requise(PorteeTechnicien)
def retirer_candidature(portee, candidature_id):
    data = request.get_json(silent=True) or {}
    candidature = service.retirer_candidature(candidature_id, portee.technicien_id, data.get('motif'))
    return jsonify({'success': True, 'candidature': candidature_to_dict(candidature)})


@maintenance_bp.route('/candidatures/<int:candidature_id>/suspendre', methods=['PUT'])
@login_required
@portee_requise(PorteeAdmin)
def suspendre_intervenant(portee, candidature_id):
    data = request.get_json(silent=True) or {}
    candidature = service.suspendre_intervenant(candidature_id, data.get('motif'))
    return jsonify({'success': True, 'candidature': candidature_to_dict(candidature)})


# ==================== INTERVENTIONS ====================

@maintenance_bp.route('/interventions')
@login_required
@portee_requise()
def list_interventions(portee):
    query = get_interventions_query(portee, Intervention.query.order_by(Intervention.id.desc()))
    if request.args.get('statut'):
        query = query.filter(Intervention.statut == request.args['statut'])

    pagination, meta = _paginer(query)
    return jsonify({
        'interventions': [intervention_to_dict(i) for i in pagination.items],
        'pagination': meta,
    })


@maintenance_bp.route('/interventions/<int:intervention_id>/accepter', methods=['PUT'])
@login_required
@portee_requise(PorteeTechnicien)
def accepter_intervention(portee, intervention_id):
    intervention = service.accepter_intervention(intervention_id, portee.technicien_id)
    return jsonify({'success': True, 'intervention': intervention_to_dict(intervention)})


@maintenance_bp.route('/interventions/<int:intervention_id>/demarrer', methods=['PUT'])
@login_required
@portee_requise(PorteeAdmin, PorteeTechnicien)
def demarrer_intervention(portee, intervention_id):
    _intervention_visible(portee, intervention_id)
    intervention = service.demarrer_intervention(intervention_id)
    return jsonify({'success': True, 'intervention': intervention_to_dict(intervention)})


@maintenance_bp.route('/interventions/<int:intervention_id>/rapport', methods=['POST'])
@login_required
@portee_requise(PorteeAdmin, PorteeTechnicien)
def rediger_rapport(portee, intervention_id):
    """collectif=true : rapport commun à l'équipe (sans technicien_id)"""
    _intervention_visible(portee, intervention_id)
    data = request.get_json(silent=True) or {}
    rapport = service.rediger_rapport(intervention_id, data, collectif=bool(data.get('collectif')))
    return jsonify({'success': True, 'rapport': rapport_to_dict(rapport)}), 201


@maintenance_bp.route('/interventions/<int:intervention_id>/retirer-mission', methods=['PUT'])
@login_required
@portee_requise(PorteeAdmin)
def retirer_mission(portee, intervention_id):
    data = request.get_json(silent=True) or {}
    intervention, ordre = service.retirer_mission_technicien(intervention_id, data.get('motif'))
    return jsonify({
        'success': True,
        'intervention': intervention_to_dict(intervention),
        'ordre_mission': ordre_to_dict(ordre),
    })


@maintenance_bp.route('/interventions/<int:intervention_id>/noter', methods=['POST'])
@login_required
@portee_requise(PorteeEcole)
def noter_intervention(portee, intervention_id):
    data = request.get_json(silent=True) or {}
    avis = service.noter_intervention(intervention_id, portee.ecole_id,
                                      data.get('note'), data.get('commentaire'))
    return jsonify({'success': True, 'avis': avis_to_dict(avis)}), 201


# ==================== RAPPORTS ====================

@maintenance_bp.route('/rapports')
@login_required
@portee_requise()
def list_rapports(portee):
    query = get_rapports_query(portee, RapportIntervention.query.order_by(RapportIntervention.id.desc()))
    pagination, meta = _paginer(query)
    return jsonify({'rapports': [rapport_to_dict(r) for r in pagination.items], 'pagination': meta})


@maintenance_bp.route('/rapports/<int:rapport_id>/evaluer', methods=['PUT'])
@login_required
@portee_requise(PorteeAdmin)
def evaluer_rapport(portee, rapport_id):
    data = request.get_json(silent=True) or {}
    rapport = service.evaluer_rapport(rapport_id, bool(data.get('approuve')),
                                      data.get('note'), data.get('commentaire'))
    return jsonify({'success': True, 'rapport': rapport_to_dict(rapport)})
