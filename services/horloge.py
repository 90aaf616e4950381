"""
services/horloge.py - "Maintenant" dans le fuseau horaire des écoles

Les dates d'abonnement sont comparées à la date locale de l'école
(APP_TIMEZONE), les horodatages sont stockés en UTC naïf.
"""

from datetime import date, datetime, time

import pytz
from flask import current_app


def fuseau():
    return pytz.timezone(current_app.config.get('APP_TIMEZONE', 'UTC'))


def maintenant():
    """Datetime local (aware)"""
    return datetime.now(fuseau())


def aujourdhui():
    return maintenant().date()


def maintenant_utc():
    """Horodatage à stocker en base"""
    return datetime.utcnow()


def epoch_local(jour, fin_de_journee=False):
    """Timestamp Unix du début (ou de la dernière seconde) d'une journée locale"""
    heure = time(23, 59, 59) if fin_de_journee else time.min
    return int(fuseau().localize(datetime.combine(jour, heure)).timestamp())


def lire_date(valeur):
    """Accepte date, datetime ou 'YYYY-MM-DD'. Lève ValueError sinon."""
    if isinstance(valeur, datetime):
        return valeur.date()
    if isinstance(valeur, date):
        return valeur
    if isinstance(valeur, str):
        return datetime.strptime(valeur.strip(), '%Y-%m-%d').date()
    raise ValueError(f"Date invalide : {valeur!r}")
