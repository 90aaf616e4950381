"""
policies/sirene_auth.py - Authentification des sirènes (poll du firmware)

Le token crypté est présenté dans l'en-tête SIRENE_TOKEN_HEADER ; la route
porte le numéro de série. Tout échec est un refus 401, jamais une erreur 500.
"""

import logging
from functools import wraps

from flask import current_app, g, jsonify, request

from services.exceptions import AuthentificationSireneRefusee
from services.tokens import verifier_token_presente

logger = logging.getLogger(__name__)


def sirene_auth_required(f):
    """
    Usage:
        @sirenes_bp.route('/<numero_serie>/programmation')
        @sirene_auth_required
        def programmation(numero_serie):
            g.sirene, g.abonnement ...
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        chaine = request.headers.get(current_app.config['SIRENE_TOKEN_HEADER'])
        numero_serie = kwargs.get('numero_serie')

        try:
            token, abonnement, sirene = verifier_token_presente(chaine, numero_serie)
        except AuthentificationSireneRefusee as e:
            logger.warning("Sirène refusée (numero_serie=%s, ip=%s): %s",
                           numero_serie, request.remote_addr, e.message)
            return jsonify(e.to_dict()), e.code_http

        g.token_sirene = token
        g.abonnement = abonnement
        g.sirene = sirene
        return f(*args, **kwargs)
    return decorated_function
