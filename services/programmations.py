"""
services/programmations.py - Compilation des programmations de sonneries

Transforme les horaires édités et les exceptions de jours fériés en :
- chaine_programmee : résumé lisible
- chaine_cryptee : charge utile cryptée que la sirène interroge hors connexion

Toute modification des horaires, de la période ou des exceptions régénère
les deux chaînes dans la même transaction.
"""

import json
import logging
import secrets
from dataclasses import dataclass, asdict, field
from datetime import date
from typing import List, Optional

from flask import current_app

from models import db, Programmation, Sirene, Abonnement, CalendrierScolaire, StatutAbonnement
from policies.business_rules import ProgrammationRules
from services import abonnements, calendrier as calendrier_service, horloge
from services.cryptage import crypter, decrypter
from services.exceptions import ViolationInvariant, RessourceIntrouvable, PreconditionNonRemplie
from services.transaction import transaction

logger = logging.getLogger(__name__)

# 0 = dimanche ... 6 = samedi
NOMS_JOURS = ['Dimanche', 'Lundi', 'Mardi', 'Mercredi', 'Jeudi', 'Vendredi', 'Samedi']


@dataclass
class HoraireSonnerie:
    heure: int
    minute: int
    jours: List[int]
    duree_sonnerie: int = 3
    description: Optional[str] = None

    @classmethod
    def from_dict(cls, data):
        return cls(
            heure=data['heure'],
            minute=data['minute'],
            jours=sorted(data['jours']),
            duree_sonnerie=data.get('duree_sonnerie', 3),
            description=data.get('description'),
        )

    def to_dict(self):
        return asdict(self)


@dataclass
class ExceptionJourFerie:
    date: date
    action: str

    @classmethod
    def from_dict(cls, data):
        return cls(date=horloge.lire_date(data['date']), action=data['action'])

    def to_dict(self):
        return {'date': self.date.isoformat(), 'action': self.action}


@dataclass
class DonneesProgrammation:
    horaires: List[HoraireSonnerie]
    exceptions: List[ExceptionJourFerie]
    avertissements: List[str] = field(default_factory=list)


def indice_jour(jour):
    """date -> 0 (dimanche) .. 6 (samedi)"""
    return (jour.weekday() + 1) % 7


# ==================== VALIDATION ====================

def valider(horaires, exceptions, date_debut, date_fin, abonnement=None, calendrier=None):
    """
    Raises:
        ViolationInvariant: avec la liste complète des règles violées

    Returns:
        DonneesProgrammation normalisées (horaires triés, exceptions triées par date)
    """
    errors = []

    _, erreurs_horaires = ProgrammationRules.validate_horaires(horaires)
    errors.extend(erreurs_horaires)

    _, erreurs_exceptions = ProgrammationRules.validate_exceptions(exceptions)
    errors.extend(erreurs_exceptions)

    _, erreurs_fenetre = ProgrammationRules.validate_fenetre(date_debut, date_fin, abonnement)
    errors.extend(erreurs_fenetre)

    if errors:
        raise ViolationInvariant("Programmation invalide", errors)

    liste_horaires = sorted(
        (HoraireSonnerie.from_dict(h) for h in horaires),
        key=lambda h: (h.heure, h.minute, h.jours),
    )
    liste_exceptions = sorted(
        (ExceptionJourFerie.from_dict(e) for e in exceptions or []),
        key=lambda e: e.date,
    )

    avertissements = ProgrammationRules.avertissements_calendrier(exceptions, calendrier)
    for avertissement in avertissements:
        logger.warning("Programmation : %s", avertissement)

    return DonneesProgrammation(liste_horaires, liste_exceptions, avertissements)


# ==================== COMPILATION ====================

def compiler_chaine_programmee(programmation):
    jours = ', '.join(NOMS_JOURS[j] for j in programmation.jours_semaine)
    horaires = ', '.join(
        f"{h['heure']:02d}:{h['minute']:02d}" for h in programmation.horaires_sonneries
    )
    return (
        f"Programmation: {programmation.nom_programmation} | Jours: {jours} | "
        f"Horaires: {horaires} | Période: {programmation.date_debut:%d/%m/%Y} "
        f"au {programmation.date_fin:%d/%m/%Y}"
    )


def construire_charge_utile(programmation):
    return {
        'programmation_id': programmation.id,
        'sirene_id': programmation.sirene_id,
        'ecole_id': programmation.ecole_id,
        'site_id': programmation.site_id,
        'nom': programmation.nom_programmation,
        'horaires': programmation.horaires_sonneries,
        'jours': programmation.jours_semaine,
        'date_debut': programmation.date_debut.isoformat(),
        'date_fin': programmation.date_fin.isoformat(),
        'jours_feries_inclus': programmation.jours_feries_inclus,
        'jours_feries_exceptions': programmation.jours_feries_exceptions or [],
        'actif': programmation.actif,
        'generated_at': horloge.maintenant().isoformat(),
        # Deux générations successives ne donnent jamais la même chaîne
        'nonce': secrets.token_hex(8),
    }


def compiler_chaine_cryptee(programmation):
    texte = json.dumps(construire_charge_utile(programmation),
                       ensure_ascii=False, separators=(',', ':'))
    return crypter(texte, current_app.config['SIRENE_CLE_CRYPTAGE'])


def decrypter_chaine(chaine):
    return json.loads(decrypter(chaine, current_app.config['SIRENE_CLE_CRYPTAGE']))


def _regenerer(programmation):
    db.session.flush()
    programmation.chaine_programmee = compiler_chaine_programmee(programmation)
    programmation.chaine_cryptee = compiler_chaine_cryptee(programmation)
    programmation.updated_at = horloge.maintenant_utc()
    return programmation


# ==================== CRÉATION / MODIFICATION ====================

def _abonnement_de_reference(sirene, abonnement_id=None):
    if abonnement_id:
        abonnement = db.session.get(Abonnement, abonnement_id)
        if abonnement is None or abonnement.sirene_id != sirene.id:
            raise RessourceIntrouvable("Abonnement introuvable pour cette sirène")
    else:
        abonnement = abonnements.abonnement_actif_sirene(sirene.id)

    if abonnement is None or abonnement.statut != StatutAbonnement.ACTIF:
        raise PreconditionNonRemplie(
            f"La sirène {sirene.numero_serie} n'a pas d'abonnement actif"
        )
    return abonnement


def _charger_calendrier(calendrier_id):
    if not calendrier_id:
        return None
    calendrier = db.session.get(CalendrierScolaire, calendrier_id)
    if calendrier is None:
        raise RessourceIntrouvable("Calendrier scolaire introuvable")
    return calendrier


def _lire_periode(data, abonnement):
    try:
        date_debut = horloge.lire_date(data.get('date_debut') or abonnement.date_debut)
        date_fin = horloge.lire_date(data.get('date_fin') or abonnement.date_fin)
    except ValueError as e:
        raise ViolationInvariant("Période invalide (YYYY-MM-DD requis)") from e
    return date_debut, date_fin


def creer_programmation(sirene_id, data, compte_id=None):
    """
    Returns:
        (Programmation, avertissements)
    """
    if not (data.get('nom_programmation') or '').strip():
        raise ViolationInvariant("Le nom de la programmation est obligatoire")

    with transaction('creer_programmation', sirene_id=sirene_id):
        sirene = db.session.get(Sirene, sirene_id)
        if sirene is None or sirene.deleted_at is not None:
            raise RessourceIntrouvable("Sirène introuvable")

        abonnement = _abonnement_de_reference(sirene, data.get('abonnement_id'))
        calendrier = _charger_calendrier(data.get('calendrier_id'))
        date_debut, date_fin = _lire_periode(data, abonnement)

        donnees = valider(
            data.get('horaires_sonneries'), data.get('jours_feries_exceptions'),
            date_debut, date_fin, abonnement, calendrier,
        )

        programmation = Programmation(
            sirene_id=sirene.id,
            ecole_id=abonnement.ecole_id,
            site_id=abonnement.site_id,
            abonnement_id=abonnement.id,
            calendrier_id=calendrier.id if calendrier else None,
            nom_programmation=data['nom_programmation'].strip(),
            horaires_sonneries=[h.to_dict() for h in donnees.horaires],
            jours_feries_inclus=bool(data.get('jours_feries_inclus', False)),
            jours_feries_exceptions=[e.to_dict() for e in donnees.exceptions],
            date_debut=date_debut,
            date_fin=date_fin,
            actif=bool(data.get('actif', True)),
            cree_par=compte_id,
        )
        db.session.add(programmation)
        _regenerer(programmation)

    logger.info("Programmation créée (programmation_id=%s, sirene_id=%s)",
                programmation.id, sirene_id)
    return programmation, donnees.avertissements


def charger(programmation_id, sirene_id=None):
    programmation = db.session.get(Programmation, programmation_id)
    if (programmation is None or programmation.deleted_at is not None
            or (sirene_id is not None and programmation.sirene_id != sirene_id)):
        raise RessourceIntrouvable("Programmation introuvable")
    return programmation


def modifier_programmation(programmation_id, data, sirene_id=None):
    """
    Returns:
        (Programmation, avertissements)
    """
    with transaction('modifier_programmation', programmation_id=programmation_id):
        programmation = charger(programmation_id, sirene_id)
        abonnement = programmation.abonnement

        if 'calendrier_id' in data:
            calendrier = _charger_calendrier(data['calendrier_id'])
            programmation.calendrier_id = calendrier.id if calendrier else None
        else:
            calendrier = programmation.calendrier

        try:
            date_debut = horloge.lire_date(data.get('date_debut', programmation.date_debut))
            date_fin = horloge.lire_date(data.get('date_fin', programmation.date_fin))
        except ValueError as e:
            raise ViolationInvariant("Période invalide (YYYY-MM-DD requis)") from e

        donnees = valider(
            data.get('horaires_sonneries', programmation.horaires_sonneries),
            data.get('jours_feries_exceptions', programmation.jours_feries_exceptions),
            date_debut, date_fin, abonnement, calendrier,
        )

        if 'nom_programmation' in data:
            if not (data['nom_programmation'] or '').strip():
                raise ViolationInvariant("Le nom de la programmation est obligatoire")
            programmation.nom_programmation = data['nom_programmation'].strip()
        if 'jours_feries_inclus' in data:
            programmation.jours_feries_inclus = bool(data['jours_feries_inclus'])
        if 'actif' in data:
            programmation.actif = bool(data['actif'])

        programmation.horaires_sonneries = [h.to_dict() for h in donnees.horaires]
        programmation.jours_feries_exceptions = [e.to_dict() for e in donnees.exceptions]
        programmation.date_debut = date_debut
        programmation.date_fin = date_fin
        _regenerer(programmation)

    logger.info("Programmation modifiée (programmation_id=%s)", programmation_id)
    return programmation, donnees.avertissements


def regenerer_programmation(programmation_id):
    with transaction('regenerer_programmation', programmation_id=programmation_id):
        programmation = _regenerer(charger(programmation_id))
    return programmation


def supprimer_programmation(programmation_id, sirene_id=None):
    with transaction('supprimer_programmation', programmation_id=programmation_id):
        programmation = charger(programmation_id, sirene_id)
        programmation.actif = False
        programmation.deleted_at = horloge.maintenant_utc()
    return programmation


# ==================== PLANNING EFFECTIF ====================

def programmation_effective(programmation, jour):
    """Horaires qui sonnent à la date donnée (liste vide = pas de sonnerie)"""
    jour = horloge.lire_date(jour)
    if (not programmation.actif or programmation.deleted_at is not None
            or not programmation.date_debut <= jour <= programmation.date_fin):
        return []

    indice = indice_jour(jour)
    if indice not in programmation.jours_semaine:
        return []

    actions = {e['date']: e['action'] for e in programmation.jours_feries_exceptions or []}
    action = actions.get(jour.isoformat())

    if (not programmation.jours_feries_inclus and action != 'include'
            and calendrier_service.est_jour_ferie(jour, programmation.ecole_id,
                                                   programmation.calendrier_id)):
        return []
    if action == 'exclude':
        return []

    return [h for h in programmation.horaires_sonneries if indice in h['jours']]


def programmations_effectives_pour_sirene(sirene_id, jour):
    resultat = []
    for programmation in programmations_sirene(sirene_id).all():
        horaires = programmation_effective(programmation, jour)
        if horaires:
            resultat.append((programmation, horaires))
    return resultat


def programmations_sirene(sirene_id):
    return Programmation.query.filter(
        Programmation.sirene_id == sirene_id,
        Programmation.deleted_at.is_(None),
    ).order_by(Programmation.created_at.desc())


def programmation_pour_sirene(sirene):
    """
    Réponse au poll de la sirène : programmation active la plus récente.

    Raises:
        RessourceIntrouvable: aucune programmation active (jamais de planning par défaut)
    """
    aujourd_hui = horloge.aujourdhui()
    programmation = Programmation.query.filter(
        Programmation.sirene_id == sirene.id,
        Programmation.actif.is_(True),
        Programmation.deleted_at.is_(None),
        Programmation.date_debut <= aujourd_hui,
        Programmation.date_fin >= aujourd_hui,
    ).order_by(Programmation.updated_at.desc(), Programmation.id.desc()).first()

    if programmation is None:
        raise RessourceIntrouvable("Aucune programmation active pour cette sirène")

    if not programmation.chaine_cryptee:
        with transaction('regenerer_programmation', programmation_id=programmation.id):
            _regenerer(programmation)

    return {
        'chaine_cryptee': programmation.chaine_cryptee,
        'chaine_programmee': programmation.chaine_programmee,
        'version': current_app.config['PROGRAMMATION_VERSION'],
        'date_generation': programmation.updated_at.isoformat() if programmation.updated_at else None,
        'date_debut': programmation.date_debut.isoformat(),
        'date_fin': programmation.date_fin.isoformat(),
    }
