"""
services/exceptions.py - Erreurs métier typées

Chaque erreur porte un message lisible (la règle violée) et le code HTTP
renvoyé par les routes.
"""


class ErreurMetier(Exception):
    """Base de toutes les erreurs remontées à l'appelant"""

    code_http = 400

    def __init__(self, message, erreurs=None):
        super().__init__(message)
        self.message = message
        self.erreurs = list(erreurs) if erreurs else []

    def to_dict(self):
        return {
            'success': False,
            'message': self.message,
            'erreurs': self.erreurs,
        }


class ViolationInvariant(ErreurMetier):
    """Abonnement vivant en double, transition interdite, jour férié en double..."""
    code_http = 422


class RessourceIntrouvable(ErreurMetier):
    code_http = 404


class PreconditionNonRemplie(ErreurMetier):
    """Erreur corrigeable par l'utilisateur (paiement manquant, candidature close...)"""
    code_http = 422


class ConflitConcurrence(ErreurMetier):
    """Course perdue sur un index unique au moment du commit"""
    code_http = 409


class ErreurPasserelle(ErreurMetier):
    """Passerelle de paiement injoignable ou réponse invalide, l'appel peut être rejoué"""
    code_http = 502
    rejouable = True


class ErreurInfrastructure(ErreurMetier):
    code_http = 500


class AuthentificationSireneRefusee(ErreurMetier):
    code_http = 401


class ChaineCorrompue(ErreurMetier):
    """Chaîne cryptée illisible ou somme de contrôle invalide"""
    code_http = 400
