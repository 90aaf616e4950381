"""
policies/rbac.py - Portée des comptes et filtres de lecture

Le type de compte est résolu UNE fois à la frontière (route) en une portée
explicite, passée ensuite à chaque filtre de requête :
    PorteeEcole(ecole_id) | PorteeTechnicien(technicien_id) | PorteeAdmin()
"""

from dataclasses import dataclass
from functools import wraps

from flask import jsonify
from flask_login import current_user


@dataclass(frozen=True)
class PorteeEcole:
    ecole_id: int


@dataclass(frozen=True)
class PorteeTechnicien:
    technicien_id: int


@dataclass(frozen=True)
class PorteeAdmin:
    pass


def portee_de(compte):
    """Compte -> portée. Lève ValueError si le compte est incohérent."""
    from models import Compte

    if compte.type_compte == Compte.TYPE_ADMIN:
        return PorteeAdmin()
    if compte.type_compte == Compte.TYPE_ECOLE and compte.ecole_id:
        return PorteeEcole(compte.ecole_id)
    if compte.type_compte == Compte.TYPE_TECHNICIEN and compte.technicien_id:
        return PorteeTechnicien(compte.technicien_id)
    raise ValueError(f"Compte {compte.id} sans rattachement valide ({compte.type_compte})")


def portee_courante():
    return portee_de(current_user)


# ==================== FILTRES (READ) ====================

def get_abonnements_query(portee, base_query):
    """
    Args:
        portee: PorteeEcole / PorteeTechnicien / PorteeAdmin
        base_query: Query SQLAlchemy de base (Abonnement.query)
    """
    from models import Abonnement

    if isinstance(portee, PorteeAdmin):
        return base_query
    if isinstance(portee, PorteeEcole):
        return base_query.filter(Abonnement.ecole_id == portee.ecole_id)
    # Les techniciens ne voient pas les abonnements
    return base_query.filter(Abonnement.id == None)


def get_programmations_query(portee, base_query):
    from models import Programmation

    if isinstance(portee, PorteeAdmin):
        return base_query
    if isinstance(portee, PorteeEcole):
        return base_query.filter(Programmation.ecole_id == portee.ecole_id)
    return base_query.filter(Programmation.id == None)


def get_pannes_query(portee, base_query):
    from models import Panne, Intervention
    from sqlalchemy import select

    if isinstance(portee, PorteeAdmin):
        return base_query
    if isinstance(portee, PorteeEcole):
        return base_query.filter(Panne.ecole_id == portee.ecole_id)
    # Technicien : pannes sur lesquelles il intervient
    return base_query.filter(Panne.id.in_(
        select(Intervention.panne_id).where(Intervention.technicien_id == portee.technicien_id)
    ))


def get_ordres_mission_query(portee, base_query):
    from models import OrdreMission

    if isinstance(portee, PorteeEcole):
        return base_query.filter(OrdreMission.ecole_id == portee.ecole_id)
    # Techniciens : tous les ordres (pour candidater), admins : tout
    return base_query


def get_interventions_query(portee, base_query):
    from models import Intervention, Panne

    if isinstance(portee, PorteeAdmin):
        return base_query
    if isinstance(portee, PorteeTechnicien):
        return base_query.filter(Intervention.technicien_id == portee.technicien_id)
    return base_query.join(Panne, Intervention.panne_id == Panne.id).filter(
        Panne.ecole_id == portee.ecole_id
    )


def get_rapports_query(portee, base_query):
    """Technicien : ses rapports + rapports collectifs de ses interventions"""
    from models import RapportIntervention, Intervention, Panne
    from sqlalchemy import and_, or_

    if isinstance(portee, PorteeAdmin):
        return base_query

    query = base_query.join(Intervention, RapportIntervention.intervention_id == Intervention.id)
    if isinstance(portee, PorteeTechnicien):
        return query.filter(or_(
            RapportIntervention.technicien_id == portee.technicien_id,
            and_(RapportIntervention.technicien_id == None,
                 Intervention.technicien_id == portee.technicien_id),
        ))
    return query.join(Panne, Intervention.panne_id == Panne.id).filter(
        Panne.ecole_id == portee.ecole_id
    )


# ==================== PERMISSIONS ====================

def peut_gerer_ecole(portee, ecole_id):
    return isinstance(portee, PorteeAdmin) or (
        isinstance(portee, PorteeEcole) and portee.ecole_id == ecole_id
    )


def portee_requise(*types_autorises):
    """
    Décorateur : résout la portée du compte connecté et la passe à la vue.

    Usage:
        @abonnements_bp.route('/<int:abonnement_id>/activer', methods=['POST'])
        @login_required
        @portee_requise(PorteeAdmin)
        def activer(portee, abonnement_id):
            ...
    """
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            try:
                portee = portee_courante()
            except ValueError:
                return jsonify({'success': False, 'message': "Compte sans rattachement valide"}), 403

            if types_autorises and not isinstance(portee, types_autorises):
                return jsonify({'success': False, 'message': "Accès refusé"}), 403

            return f(portee, *args, **kwargs)
        return decorated_function
    return decorator
