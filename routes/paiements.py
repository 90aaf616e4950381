"""
routes/paiements.py - Paiements et notification CinetPay
"""

from flask import Blueprint, jsonify, request
from flask_login import login_required, current_user
from policies.rbac import portee_requise, PorteeAdmin
from services import paiements as service

paiements_bp = Blueprint('paiements', __name__)


def paiement_to_dict(paiement):
    return {
        'id': paiement.id,
        'abonnement_id': paiement.abonnement_id,
        'numero_transaction': paiement.numero_transaction,
        'montant': float(paiement.montant or 0),
        'moyen': paiement.moyen,
        'statut': paiement.statut,
        'reference_externe': paiement.reference_externe,
        'date_validation': paiement.date_validation.isoformat() if paiement.date_validation else None,
    }


@paiements_bp.route('/cinetpay/notify', methods=['POST'])
def cinetpay_notify():
    """
    Notification de la passerelle (sans session).

    Re-livrer la même notification ne rejoue aucun effet de bord.
    """
    payload = request.get_json(silent=True) or request.form.to_dict()
    paiement = service.traiter_notification(payload)
    return jsonify({
        'success': True,
        'statut': paiement.statut,
        'abonnement_statut': paiement.abonnement.statut,
    })


@paiements_bp.route('', methods=['POST'])
@login_required
@portee_requise(PorteeAdmin)
def create(portee):
    """Enregistre un paiement hors ligne (espèces, virement)"""
    data = request.get_json(silent=True) or {}
    paiement = service.enregistrer_paiement(
        data.get('abonnement_id'), data.get('montant', 0),
        data.get('moyen', 'especes'), data.get('reference'),
    )
    return jsonify({'success': True, 'paiement': paiement_to_dict(paiement)}), 201


@paiements_bp.route('/<int:paiement_id>/valider', methods=['PUT'])
@login_required
@portee_requise(PorteeAdmin)
def valider(portee, paiement_id):
    paiement = service.valider_paiement_manuel(paiement_id, current_user.id)
    return jsonify({'success': True, 'paiement': paiement_to_dict(paiement)})


@paiements_bp.route('/verifier/<transaction_id>')
@login_required
@portee_requise(PorteeAdmin)
def verifier(portee, transaction_id):
    return jsonify({'success': True, 'passerelle': service.verifier_transaction(transaction_id)})
