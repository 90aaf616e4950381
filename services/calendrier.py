"""
services/calendrier.py - Calendriers scolaires et jours fériés

Source de vérité pour "la date D est-elle un jour sans école pour l'école S".
Une ligne propre à l'école pour une date fait autorité sur le jour férié
national (actif=False supprime le jour férié national).
"""

import logging
from datetime import timedelta

from models import db, CalendrierScolaire, Ecole, JourFerie
from policies.business_rules import CalendrierRules, JourFerieRules
from services.exceptions import ViolationInvariant, RessourceIntrouvable
from services.horloge import lire_date
from services.transaction import transaction

logger = logging.getLogger(__name__)


# ==================== RÉSOLUTION ====================

def _correspond(jour_ferie, jour):
    if jour_ferie.recurrent:
        return (jour_ferie.date.month, jour_ferie.date.day) == (jour.month, jour.day)
    return jour_ferie.date == jour


def _candidats(ecole_id=None, calendrier_id=None):
    """(lignes nationales, lignes de l'école) susceptibles de s'appliquer

    Les lignes nationales sont limitées au pays de l'école, ou à défaut
    à celui du calendrier. Une ligne sans pays vaut pour tous.
    """
    pays = None
    if ecole_id is not None:
        ecole = db.session.get(Ecole, ecole_id)
        pays = ecole.pays_code if ecole is not None else None
    if pays is None and calendrier_id is not None:
        calendrier = db.session.get(CalendrierScolaire, calendrier_id)
        pays = calendrier.pays_code if calendrier is not None else None

    nationaux = JourFerie.query.filter(JourFerie.ecole_id.is_(None))
    if pays is not None:
        nationaux = nationaux.filter(db.or_(
            JourFerie.pays_code == pays,
            JourFerie.pays_code.is_(None),
        ))
    if calendrier_id is not None:
        nationaux = nationaux.filter(db.or_(
            JourFerie.calendrier_id == calendrier_id,
            JourFerie.calendrier_id.is_(None),
        ))

    propres = []
    if ecole_id is not None:
        propres = JourFerie.query.filter(JourFerie.ecole_id == ecole_id).all()
    return nationaux.all(), propres


def _est_ferie_parmi(jour, nationaux, propres):
    lignes_ecole = [jf for jf in propres if _correspond(jf, jour)]
    if lignes_ecole:
        return any(jf.actif for jf in lignes_ecole)
    return any(jf.actif for jf in nationaux if _correspond(jf, jour))


def est_jour_ferie(jour, ecole_id=None, calendrier_id=None):
    nationaux, propres = _candidats(ecole_id, calendrier_id)
    return _est_ferie_parmi(lire_date(jour), nationaux, propres)


def en_vacances(calendrier, jour):
    for periode in calendrier.periodes_vacances or []:
        if lire_date(periode['date_debut']) <= jour <= lire_date(periode['date_fin']):
            return True
    return False


def compter_jours_ecole(calendrier_id, ecole_id=None):
    """Jours ouvrés (lundi-vendredi) de l'année scolaire hors fériés et vacances"""
    calendrier = db.session.get(CalendrierScolaire, calendrier_id)
    if calendrier is None:
        raise RessourceIntrouvable("Calendrier scolaire introuvable")

    nationaux, propres = _candidats(ecole_id, calendrier.id)

    total = 0
    jour = calendrier.date_rentree
    while jour <= calendrier.date_fin_annee:
        if (jour.weekday() < 5
                and not en_vacances(calendrier, jour)
                and not _est_ferie_parmi(jour, nationaux, propres)):
            total += 1
        jour += timedelta(days=1)
    return total


# ==================== CRÉATION ====================

def _exiger_unique(calendrier_id, jour, ecole_id):
    # NULL ne collisionne pas dans une contrainte UNIQUE SQL, d'où ce contrôle
    existant = JourFerie.query.filter(
        JourFerie.calendrier_id.is_(None) if calendrier_id is None
        else JourFerie.calendrier_id == calendrier_id,
        JourFerie.ecole_id.is_(None) if ecole_id is None else JourFerie.ecole_id == ecole_id,
        JourFerie.date == jour,
    ).first()
    if existant is not None:
        raise ViolationInvariant(
            f"Un jour férié existe déjà le {jour.isoformat()} ({existant.intitule_journee})"
        )


def _creer_jour_ferie(data, calendrier=None):
    valid, errors = JourFerieRules.validate_create(data, calendrier)
    if not valid:
        raise ViolationInvariant("Jour férié invalide", errors)

    jour = lire_date(data['date'])
    ecole_id = data.get('ecole_id')
    calendrier_id = calendrier.id if calendrier is not None else None
    _exiger_unique(calendrier_id, jour, ecole_id)

    jour_ferie = JourFerie(
        calendrier_id=calendrier_id,
        ecole_id=ecole_id,
        pays_code=data.get('pays_code') or (calendrier.pays_code if calendrier else None),
        intitule_journee=data['intitule_journee'].strip(),
        date=jour,
        recurrent=bool(data.get('recurrent', False)),
        est_national=bool(data.get('est_national', True)),
        actif=bool(data.get('actif', True)),
    )
    db.session.add(jour_ferie)
    db.session.flush()
    return jour_ferie


def _charger_calendrier(calendrier_id):
    if calendrier_id is None:
        return None
    calendrier = db.session.get(CalendrierScolaire, calendrier_id)
    if calendrier is None:
        raise RessourceIntrouvable("Calendrier scolaire introuvable")
    return calendrier


def creer_calendrier(data):
    """Crée le calendrier et ses jours fériés par défaut dans la même transaction"""
    valid, errors = CalendrierRules.validate_create(data)
    if not valid:
        raise ViolationInvariant("Calendrier scolaire invalide", errors)

    with transaction('creer_calendrier', pays_code=data.get('pays_code')):
        calendrier = CalendrierScolaire(
            pays_code=data['pays_code'],
            annee_scolaire=data['annee_scolaire'],
            description=data.get('description'),
            date_rentree=lire_date(data['date_rentree']),
            date_fin_annee=lire_date(data['date_fin_annee']),
            periodes_vacances=data.get('periodes_vacances') or [],
            jours_feries_defaut=data.get('jours_feries_defaut') or [],
            actif=bool(data.get('actif', True)),
        )
        db.session.add(calendrier)
        db.session.flush()

        for defaut in calendrier.jours_feries_defaut:
            _creer_jour_ferie({**defaut, 'est_national': True, 'ecole_id': None}, calendrier)

    logger.info("Calendrier %s %s créé (calendrier_id=%s)",
                calendrier.pays_code, calendrier.annee_scolaire, calendrier.id)
    return calendrier


def creer_jour_ferie(data):
    with transaction('creer_jour_ferie', calendrier_id=data.get('calendrier_id')):
        jour_ferie = _creer_jour_ferie(data, _charger_calendrier(data.get('calendrier_id')))
    return jour_ferie


def creer_jours_feries_bulk(calendrier_id, elements):
    """Tout ou rien"""
    if not elements:
        raise ViolationInvariant("Aucun jour férié à créer")

    crees = []
    with transaction('creer_jours_feries_bulk', calendrier_id=calendrier_id):
        calendrier = _charger_calendrier(calendrier_id)
        for element in elements:
            crees.append(_creer_jour_ferie(element, calendrier))
    return crees


def modifier_jour_ferie(jour_ferie_id, data):
    with transaction('modifier_jour_ferie', jour_ferie_id=jour_ferie_id):
        jour_ferie = db.session.get(JourFerie, jour_ferie_id)
        if jour_ferie is None:
            raise RessourceIntrouvable("Jour férié introuvable")

        fusion = {
            'intitule_journee': data.get('intitule_journee', jour_ferie.intitule_journee),
            'date': data.get('date', jour_ferie.date),
            'est_national': data.get('est_national', jour_ferie.est_national),
            'ecole_id': data.get('ecole_id', jour_ferie.ecole_id),
        }
        valid, errors = JourFerieRules.validate_create(fusion, jour_ferie.calendrier)
        if not valid:
            raise ViolationInvariant("Jour férié invalide", errors)

        jour = lire_date(fusion['date'])
        if jour != jour_ferie.date or fusion['ecole_id'] != jour_ferie.ecole_id:
            _exiger_unique(jour_ferie.calendrier_id, jour, fusion['ecole_id'])

        jour_ferie.intitule_journee = fusion['intitule_journee']
        jour_ferie.date = jour
        jour_ferie.est_national = bool(fusion['est_national'])
        jour_ferie.ecole_id = fusion['ecole_id']
        jour_ferie.recurrent = bool(data.get('recurrent', jour_ferie.recurrent))
        jour_ferie.actif = bool(data.get('actif', jour_ferie.actif))
    return jour_ferie


# ==================== CONSULTATION ====================

def jours_feries_calendrier(calendrier_id, est_national=None, ecole_id=None, debut=None, fin=None):
    _charger_calendrier(calendrier_id)
    query = JourFerie.query.filter(JourFerie.calendrier_id == calendrier_id)
    if est_national is not None:
        query = query.filter(JourFerie.est_national.is_(est_national))
    if ecole_id is not None:
        query = query.filter(JourFerie.ecole_id == ecole_id)
    if debut is not None:
        query = query.filter(JourFerie.date >= debut)
    if fin is not None:
        query = query.filter(JourFerie.date <= fin)
    return query.order_by(JourFerie.date).all()


def calendrier_ecole(calendrier_id, ecole_id):
    """Jours fériés effectifs d'une école : ses lignes remplacent les nationales à même date"""
    calendrier = _charger_calendrier(calendrier_id)
    nationaux, propres = _candidats(ecole_id, calendrier.id)

    par_date = {jf.date: jf for jf in nationaux}
    for jf in propres:
        par_date[jf.date] = jf
    return [jf for _, jf in sorted(par_date.items()) if jf.actif]
