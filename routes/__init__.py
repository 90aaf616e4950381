"""
Routes package - Initialisation des blueprints
"""

from routes.auth import auth_bp
from routes.abonnements import abonnements_bp
from routes.paiements import paiements_bp
from routes.sirenes import sirenes_bp
from routes.calendriers import calendriers_bp
from routes.maintenance import maintenance_bp

__all__ = [
    'auth_bp',
    'abonnements_bp',
    'paiements_bp',
    'sirenes_bp',
    'calendriers_bp',
    'maintenance_bp'
]
