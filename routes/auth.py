"""
routes/auth.py - Authentification (Login, Logout, Profil)
"""

from flask import Blueprint, jsonify, request
from flask_login import login_user, logout_user, login_required, current_user
from werkzeug.security import check_password_hash
from models import Compte
from policies.rbac import portee_de

auth_bp = Blueprint('auth', __name__)


def compte_to_dict(compte):
    return {
        'id': compte.id,
        'email': compte.email,
        'nom': compte.nom,
        'type_compte': compte.type_compte,
        'ecole_id': compte.ecole_id,
        'technicien_id': compte.technicien_id,
    }


@auth_bp.route('/login', methods=['POST'])
def login():
    """Connexion (email + mot de passe)"""
    data = request.get_json(silent=True) or {}
    email = (data.get('email') or '').strip()
    password = (data.get('password') or '').strip()

    if not email or not password:
        return jsonify({'success': False, 'message': 'Veuillez remplir tous les champs'}), 400

    compte = Compte.query.filter_by(email=email).first()
    if not compte or not check_password_hash(compte.password_hash, password):
        return jsonify({'success': False, 'message': 'Email ou mot de passe incorrect'}), 401

    if not compte.is_active:
        return jsonify({'success': False, 'message': 'Compte désactivé'}), 403

    try:
        portee_de(compte)
    except ValueError:
        return jsonify({'success': False, 'message': 'Compte sans rattachement valide'}), 403

    login_user(compte, remember=bool(data.get('remember', False)))
    return jsonify({'success': True, 'compte': compte_to_dict(compte)})


@auth_bp.route('/logout', methods=['POST'])
@login_required
def logout():
    """Déconnexion"""
    logout_user()
    return jsonify({'success': True, 'message': 'Vous avez été déconnecté avec succès'})


@auth_bp.route('/me')
@login_required
def me():
    """Compte connecté"""
    return jsonify({'success': True, 'compte': compte_to_dict(current_user)})
