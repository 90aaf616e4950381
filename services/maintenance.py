"""
services/maintenance.py - Chaîne de maintenance

Panne -> validation (ordre de mission) -> candidatures des techniciens
-> acceptation (intervention) -> rapport -> évaluation et avis.

Panne : en_attente -> validee -> en_cours -> resolue -> cloturee
(resolue revient en_cours quand une mission terminée est retirée)
"""

import logging
import secrets
from datetime import datetime

from models import (
    db, Sirene, Technicien, Panne, OrdreMission, MissionTechnicien, Intervention,
    RapportIntervention, Avis,
    StatutPanne, StatutOrdreMission, StatutCandidature, StatutIntervention, StatutRapport,
)
from policies.business_rules import MaintenanceRules
from services import horloge
from services.exceptions import ViolationInvariant, RessourceIntrouvable, PreconditionNonRemplie
from services.transaction import transaction

logger = logging.getLogger(__name__)

TRANSITIONS_PANNE = {
    StatutPanne.EN_ATTENTE: (StatutPanne.VALIDEE,),
    StatutPanne.VALIDEE: (StatutPanne.EN_COURS,),
    StatutPanne.EN_COURS: (StatutPanne.RESOLUE,),
    StatutPanne.RESOLUE: (StatutPanne.CLOTUREE, StatutPanne.EN_COURS),
    StatutPanne.CLOTUREE: (),
}


def _numero(prefixe):
    return f"{prefixe}-{horloge.aujourdhui():%Y%m%d}-{secrets.token_hex(3).upper()}"


def _get(modele, identifiant, libelle, verrou=False):
    if verrou:
        objet = modele.query.filter_by(id=identifiant).with_for_update().first()
    else:
        objet = db.session.get(modele, identifiant)
    if objet is None:
        raise RessourceIntrouvable(f"{libelle} introuvable")
    return objet


def _changer_statut_panne(panne, cible):
    if cible not in TRANSITIONS_PANNE.get(panne.statut, ()):
        raise ViolationInvariant(
            f"Transition de panne interdite : {panne.statut} -> {cible}"
        )
    panne.statut = cible


def _lire_instant(valeur):
    if valeur is None or isinstance(valeur, datetime):
        return valeur
    try:
        return datetime.fromisoformat(valeur)
    except (TypeError, ValueError) as e:
        raise ViolationInvariant(f"Date-heure invalide : {valeur!r} (ISO 8601 attendu)") from e


def _exiger_note(note):
    valid, errors = MaintenanceRules.validate_note(note)
    if not valid:
        raise ViolationInvariant("Note invalide", errors)


# ==================== PANNES ====================

def declarer_panne(sirene_id, data, compte_id=None):
    if not (data.get('description') or '').strip():
        raise ViolationInvariant("La description de la panne est obligatoire")

    with transaction('declarer_panne', sirene_id=sirene_id):
        sirene = _get(Sirene, sirene_id, "Sirène")
        if sirene.deleted_at is not None or sirene.site is None:
            raise PreconditionNonRemplie("La sirène n'est installée sur aucun site")

        panne = Panne(
            numero_panne=_numero('PAN'),
            sirene_id=sirene.id,
            ecole_id=sirene.site.ecole_id,
            site_id=sirene.site_id,
            description=data['description'].strip(),
            priorite=data.get('priorite', 'normale'),
            statut=StatutPanne.EN_ATTENTE,
            declare_par=compte_id,
            date_declaration=horloge.maintenant_utc(),
        )
        db.session.add(panne)

    logger.info("Panne déclarée (panne_id=%s, sirene=%s)", panne.id, sirene.numero_serie)
    return panne


def valider_panne(panne_id, compte_id, data=None):
    """Valide la panne et génère l'ordre de mission"""
    data = data or {}
    requis = data.get('nombre_techniciens_requis', 1)
    if not isinstance(requis, int) or isinstance(requis, bool) or requis < 1:
        raise ViolationInvariant("nombre_techniciens_requis doit être un entier >= 1")

    with transaction('valider_panne', panne_id=panne_id):
        panne = _get(Panne, panne_id, "Panne", verrou=True)
        _changer_statut_panne(panne, StatutPanne.VALIDEE)
        instant = horloge.maintenant_utc()
        panne.valide_par = compte_id
        panne.date_validation = instant

        ordre = OrdreMission(
            panne_id=panne.id,
            ecole_id=panne.ecole_id,
            numero_ordre=_numero('OM'),
            statut=StatutOrdreMission.EN_ATTENTE,
            nombre_techniciens_requis=requis,
            nombre_techniciens_acceptes=0,
            candidature_cloturee=False,
            date_debut_candidature=_lire_instant(data.get('date_debut_candidature')),
            date_fin_candidature=_lire_instant(data.get('date_fin_candidature')),
            valide_par=compte_id,
            date_generation=instant,
            commentaire=data.get('commentaire'),
        )
        db.session.add(ordre)

    logger.info("Panne validée (panne_id=%s, ordre=%s)", panne.id, ordre.numero_ordre)
    return panne, ordre


def cloturer_panne(panne_id):
    with transaction('cloturer_panne', panne_id=panne_id):
        panne = _get(Panne, panne_id, "Panne", verrou=True)
        _changer_statut_panne(panne, StatutPanne.CLOTUREE)
        panne.date_cloture = horloge.maintenant_utc()
        for ordre in panne.ordres_mission:
            ordre.statut = StatutOrdreMission.CLOTURE
    return panne


# ==================== CANDIDATURES ====================

def soumettre_candidature(ordre_mission_id, technicien_id, motivation=None):
    with transaction('soumettre_candidature', ordre_mission_id=ordre_mission_id,
                     technicien_id=technicien_id):
        ordre = _get(OrdreMission, ordre_mission_id, "Ordre de mission")
        _get(Technicien, technicien_id, "Technicien")

        if not ordre.candidature_ouverte(horloge.maintenant_utc()):
            raise PreconditionNonRemplie("Les candidatures sont fermées pour cet ordre de mission")

        if ordre.candidatures.filter_by(technicien_id=technicien_id).first() is not None:
            raise ViolationInvariant("Vous avez déjà candidaté à cet ordre de mission")

        candidature = MissionTechnicien(
            ordre_mission_id=ordre.id,
            technicien_id=technicien_id,
            statut_candidature=StatutCandidature.SOUMISE,
            motivation=motivation,
            date_candidature=horloge.maintenant_utc(),
        )
        db.session.add(candidature)
    return candidature


def accepter_candidature(candidature_id):
    """
    Incrémente le quota, passe l'ordre en_cours à la première acceptation,
    clôt automatiquement les candidatures quand le quota est atteint et
    crée l'intervention assignée.
    """
    with transaction('accepter_candidature', candidature_id=candidature_id):
        candidature = _get(MissionTechnicien, candidature_id, "Candidature")
        if candidature.statut_candidature != StatutCandidature.SOUMISE:
            raise ViolationInvariant(
                f"Candidature déjà traitée ({candidature.statut_candidature})"
            )

        ordre = _get(OrdreMission, candidature.ordre_mission_id, "Ordre de mission", verrou=True)
        if ordre.statut in StatutOrdreMission.FINIS:
            raise PreconditionNonRemplie(f"Ordre de mission {ordre.statut}")
        if not ordre.peut_accepter_technicien():
            raise PreconditionNonRemplie("Le nombre de techniciens requis est déjà atteint")

        instant = horloge.maintenant_utc()
        candidature.statut_candidature = StatutCandidature.ACCEPTEE
        candidature.date_acceptation = instant

        ordre.nombre_techniciens_acceptes += 1
        if ordre.statut == StatutOrdreMission.EN_ATTENTE:
            ordre.statut = StatutOrdreMission.EN_COURS
        if not ordre.peut_accepter_technicien():
            ordre.candidature_cloturee = True
            ordre.date_cloture_candidature = instant

        panne = ordre.panne
        if panne.statut == StatutPanne.VALIDEE:
            _changer_statut_panne(panne, StatutPanne.EN_COURS)

        intervention = Intervention(
            panne_id=panne.id,
            ordre_mission_id=ordre.id,
            technicien_id=candidature.technicien_id,
            statut=StatutIntervention.ASSIGNEE,
            date_assignation=instant,
        )
        db.session.add(intervention)

    logger.info("Candidature acceptée (candidature_id=%s, ordre_mission_id=%s, %d/%d)",
                candidature_id, ordre.id, ordre.nombre_techniciens_acceptes,
                ordre.nombre_techniciens_requis)
    return candidature, intervention


def refuser_candidature(candidature_id):
    with transaction('refuser_candidature', candidature_id=candidature_id):
        candidature = _get(MissionTechnicien, candidature_id, "Candidature")
        if candidature.statut_candidature != StatutCandidature.SOUMISE:
            raise ViolationInvariant(
                f"Candidature déjà traitée ({candidature.statut_candidature})"
            )
        candidature.statut_candidature = StatutCandidature.REFUSEE
        candidature.date_refus = horloge.maintenant_utc()
    return candidature


def retirer_candidature(candidature_id, technicien_id, motif):
    """Retrait par le technicien d'une candidature pas encore traitée"""
    with transaction('retirer_candidature', candidature_id=candidature_id):
        candidature = _get(MissionTechnicien, candidature_id, "Candidature")
        if candidature.technicien_id != technicien_id:
            raise RessourceIntrouvable("Candidature introuvable")
        if candidature.statut_candidature != StatutCandidature.SOUMISE:
            raise ViolationInvariant("Seule une candidature soumise peut être retirée")

        candidature.statut_candidature = StatutCandidature.RETIREE
        candidature.motif_retrait = motif
        candidature.date_retrait = horloge.maintenant_utc()
    return candidature


def retirer_mission_technicien(intervention_id, motif):
    """
    Retire la mission au technicien d'une intervention terminée.

    Les candidatures ne sont rouvertes que si la clôture était automatique
    (cloture_par vide) et que le quota n'est plus atteint.
    """
    with transaction('retirer_mission_technicien', intervention_id=intervention_id):
        intervention = _get(Intervention, intervention_id, "Intervention")
        if intervention.statut != StatutIntervention.TERMINEE:
            raise PreconditionNonRemplie("Seules les interventions terminées peuvent être retirées")

        ordre = _get(OrdreMission, intervention.ordre_mission_id, "Ordre de mission", verrou=True)
        candidature = ordre.candidatures.filter_by(technicien_id=intervention.technicien_id).first()
        if candidature is None:
            raise RessourceIntrouvable("Candidature du technicien introuvable")

        instant = horloge.maintenant_utc()
        candidature.statut_candidature = StatutCandidature.RETIREE
        candidature.motif_retrait = motif
        candidature.date_retrait = instant

        if ordre.nombre_techniciens_acceptes > 0:
            ordre.nombre_techniciens_acceptes -= 1
            if (ordre.candidature_cloturee and ordre.cloture_par is None
                    and ordre.statut != StatutOrdreMission.CLOTURE
                    and ordre.peut_accepter_technicien()):
                ordre.candidature_cloturee = False
                ordre.date_cloture_candidature = None
                # le travail retiré est à refaire
                if ordre.statut == StatutOrdreMission.TERMINE:
                    ordre.statut = StatutOrdreMission.EN_COURS
                if ordre.panne.statut == StatutPanne.RESOLUE:
                    _changer_statut_panne(ordre.panne, StatutPanne.EN_COURS)

        intervention.statut = StatutIntervention.ANNULEE

    logger.info("Mission retirée (intervention_id=%s, candidatures %s)", intervention_id,
                'fermées' if ordre.candidature_cloturee else 'ouvertes')
    return intervention, ordre


def cloturer_candidatures(ordre_mission_id, compte_id):
    """Clôture manuelle : elle ne sera jamais rouverte automatiquement"""
    with transaction('cloturer_candidatures', ordre_mission_id=ordre_mission_id):
        ordre = _get(OrdreMission, ordre_mission_id, "Ordre de mission", verrou=True)
        if ordre.candidature_cloturee:
            raise ViolationInvariant("Les candidatures sont déjà clôturées")
        ordre.candidature_cloturee = True
        ordre.cloture_par = compte_id
        ordre.date_cloture_candidature = horloge.maintenant_utc()
    return ordre


def rouvrir_candidatures(ordre_mission_id):
    with transaction('rouvrir_candidatures', ordre_mission_id=ordre_mission_id):
        ordre = _get(OrdreMission, ordre_mission_id, "Ordre de mission", verrou=True)
        if not ordre.candidature_cloturee:
            raise ViolationInvariant("Les candidatures sont déjà ouvertes")
        if ordre.statut in StatutOrdreMission.FINIS:
            raise PreconditionNonRemplie(f"Ordre de mission {ordre.statut}")
        if not ordre.peut_accepter_technicien():
            raise PreconditionNonRemplie("Le nombre de techniciens requis est déjà atteint")
        ordre.candidature_cloturee = False
        ordre.cloture_par = None
        ordre.date_cloture_candidature = None
    return ordre


def suspendre_intervenant(candidature_id, motif):
    with transaction('suspendre_intervenant', candidature_id=candidature_id):
        candidature = _get(MissionTechnicien, candidature_id, "Candidature")
        if candidature.is_suspended:
            raise ViolationInvariant("Cet intervenant est déjà suspendu")
        candidature.is_suspended = True
        candidature.motif_suspension = motif
        candidature.date_suspension = horloge.maintenant_utc()
    return candidature


# ==================== INTERVENTIONS ====================

def accepter_intervention(intervention_id, technicien_id):
    with transaction('accepter_intervention', intervention_id=intervention_id):
        intervention = _get(Intervention, intervention_id, "Intervention")
        if intervention.technicien_id != technicien_id:
            raise RessourceIntrouvable("Intervention introuvable")
        if intervention.statut != StatutIntervention.ASSIGNEE:
            raise ViolationInvariant(f"Intervention au statut {intervention.statut}")
        intervention.statut = StatutIntervention.ACCEPTEE
        intervention.date_acceptation = horloge.maintenant_utc()
    return intervention


def demarrer_intervention(intervention_id):
    with transaction('demarrer_intervention', intervention_id=intervention_id):
        intervention = _get(Intervention, intervention_id, "Intervention")
        if intervention.statut not in (StatutIntervention.PLANIFIEE, StatutIntervention.ASSIGNEE,
                                       StatutIntervention.ACCEPTEE):
            raise ViolationInvariant(
                f"Impossible de démarrer une intervention au statut {intervention.statut}"
            )
        intervention.statut = StatutIntervention.EN_COURS
        intervention.date_debut = horloge.maintenant_utc()
    return intervention


def _resoudre_si_termine(ordre):
    """
    Plus aucune intervention ouverte sur l'ordre : ordre terminé, panne résolue.
    Les candidatures encore ouvertes sont clôturées automatiquement.
    """
    ouvertes = ordre.interventions.filter(
        Intervention.statut.in_(StatutIntervention.OUVERTS)
    ).count()
    if ouvertes:
        return False

    ordre.statut = StatutOrdreMission.TERMINE
    if not ordre.candidature_cloturee:
        ordre.candidature_cloturee = True
        ordre.date_cloture_candidature = horloge.maintenant_utc()
    panne = ordre.panne
    if panne.statut == StatutPanne.EN_COURS:
        _changer_statut_panne(panne, StatutPanne.RESOLUE)
    return True


def rediger_rapport(intervention_id, data, collectif=False):
    """Rapport en brouillon ; l'intervention passe terminee"""
    if not (data.get('rapport') or '').strip():
        raise ViolationInvariant("Le contenu du rapport est obligatoire")

    with transaction('rediger_rapport', intervention_id=intervention_id):
        intervention = _get(Intervention, intervention_id, "Intervention")
        if intervention.statut not in StatutIntervention.OUVERTS:
            raise ViolationInvariant(
                f"Impossible de rédiger un rapport pour une intervention {intervention.statut}"
            )

        instant = horloge.maintenant_utc()
        rapport = RapportIntervention(
            intervention_id=intervention.id,
            technicien_id=None if collectif else intervention.technicien_id,
            rapport=data['rapport'].strip(),
            diagnostic=data.get('diagnostic'),
            travaux_effectues=data.get('travaux_effectues'),
            pieces_utilisees=data.get('pieces_utilisees'),
            resultat=data.get('resultat'),
            recommandations=data.get('recommandations'),
            statut=StatutRapport.BROUILLON,
            date_soumission=instant,
        )
        db.session.add(rapport)

        intervention.statut = StatutIntervention.TERMINEE
        intervention.date_fin = instant
        db.session.flush()
        _resoudre_si_termine(intervention.ordre_mission)
    return rapport


def evaluer_rapport(rapport_id, approuve, note=None, commentaire=None):
    """Évaluation administrateur : brouillon -> valide | rejete"""
    if note is not None:
        _exiger_note(note)

    with transaction('evaluer_rapport', rapport_id=rapport_id):
        rapport = _get(RapportIntervention, rapport_id, "Rapport")
        if rapport.statut != StatutRapport.BROUILLON:
            raise ViolationInvariant(f"Rapport déjà évalué ({rapport.statut})")
        rapport.statut = StatutRapport.VALIDE if approuve else StatutRapport.REJETE
        rapport.review_note = note
        rapport.review_admin = commentaire
    return rapport


def noter_intervention(intervention_id, ecole_id, note, commentaire=None):
    _exiger_note(note)

    with transaction('noter_intervention', intervention_id=intervention_id):
        intervention = _get(Intervention, intervention_id, "Intervention")
        if intervention.panne.ecole_id != ecole_id:
            raise RessourceIntrouvable("Intervention introuvable")
        if intervention.statut != StatutIntervention.TERMINEE:
            raise PreconditionNonRemplie("Seule une intervention terminée peut être notée")

        intervention.note_ecole = note
        intervention.commentaire_ecole = commentaire
        avis = Avis(ecole_id=ecole_id, intervention_id=intervention.id,
                    note=note, commentaire=commentaire)
        db.session.add(avis)
    return avis


def noter_ordre_mission(ordre_mission_id, ecole_id, note, commentaire=None):
    _exiger_note(note)

    with transaction('noter_ordre_mission', ordre_mission_id=ordre_mission_id):
        ordre = _get(OrdreMission, ordre_mission_id, "Ordre de mission")
        if ordre.ecole_id != ecole_id:
            raise RessourceIntrouvable("Ordre de mission introuvable")
        if ordre.statut not in (StatutOrdreMission.TERMINE, StatutOrdreMission.CLOTURE):
            raise PreconditionNonRemplie("L'ordre de mission n'est pas terminé")

        avis = Avis(ecole_id=ecole_id, ordre_mission_id=ordre.id,
                    note=note, commentaire=commentaire)
        db.session.add(avis)
    return avis
