"""
services/abonnements.py - Cycle de vie des abonnements

EN_ATTENTE -> ACTIF -> (SUSPENDU <-> ACTIF) -> EXPIRE | ANNULE
EN_ATTENTE -> ANNULE directement. EXPIRE et ANNULE sont terminaux.

Chaque transition publique s'exécute dans une seule transaction :
statut de l'abonnement, statut de la sirène et tokens sont écrits ensemble.
Les fonctions préfixées par _ ne commitent pas.
"""

import logging
import secrets
from datetime import timedelta
from decimal import Decimal, ROUND_HALF_UP

from sqlalchemy import func

from models import (
    db, Abonnement, Paiement, Sirene,
    StatutAbonnement, StatutPaiement, StatutSirene,
)
from policies.business_rules import AbonnementRules
from services import horloge, tokens
from services.exceptions import (
    ViolationInvariant, RessourceIntrouvable, PreconditionNonRemplie,
)
from services.transaction import transaction

logger = logging.getLogger(__name__)

REMISE_RENOUVELLEMENT_ANTICIPE = Decimal('0.95')
JOURS_RENOUVELLEMENT_ANTICIPE = 30
JOURS_ALERTE_EXPIRATION = 7


def plus_un_an(jour):
    try:
        return jour.replace(year=jour.year + 1)
    except ValueError:
        # 29 février
        return jour.replace(year=jour.year + 1, day=28)


def generer_numero_abonnement():
    return f"ABN-{horloge.aujourdhui():%Y%m%d}-{secrets.token_hex(3).upper()}"


# ==================== CHARGEMENT / VERROUS ====================

def _verrouiller_sirene(sirene_id):
    """SELECT ... FOR UPDATE sur la sirène : sérialise les activations concurrentes"""
    sirene = (Sirene.query
              .filter(Sirene.id == sirene_id, Sirene.deleted_at.is_(None))
              .with_for_update()
              .first())
    if sirene is None:
        raise RessourceIntrouvable(f"Sirène {sirene_id} introuvable")
    return sirene


def _charger(abonnement_id):
    abonnement = db.session.get(Abonnement, abonnement_id)
    if abonnement is None or abonnement.deleted_at is not None:
        raise RessourceIntrouvable(f"Abonnement {abonnement_id} introuvable")
    _verrouiller_sirene(abonnement.sirene_id)
    return abonnement


def abonnement_vivant(sirene_id):
    return Abonnement.query.filter(
        Abonnement.sirene_id == sirene_id,
        Abonnement.statut.in_(StatutAbonnement.VIVANTS),
        Abonnement.deleted_at.is_(None),
    ).first()


def _exiger_aucun_abonnement_vivant(sirene):
    existant = abonnement_vivant(sirene.id)
    if existant is not None:
        raise ViolationInvariant(
            f"La sirène {sirene.numero_serie} a déjà un abonnement "
            f"{existant.statut} ({existant.numero_abonnement})"
        )


# ==================== STATUT DE LA SIRÈNE ====================

def statut_sirene_cible(statut_abonnement, statut_actuel):
    """None = statut de la sirène inchangé"""
    if statut_abonnement in (StatutAbonnement.ACTIF, StatutAbonnement.EN_ATTENTE):
        return StatutSirene.RESERVEE
    if statut_abonnement in StatutAbonnement.TERMINAUX:
        if statut_actuel == StatutSirene.EN_PANNE:
            return None
        return StatutSirene.EN_STOCK
    return None


def _recalculer_statut_sirene(abonnement):
    """Idempotent : n'écrit que si le statut calculé diffère"""
    sirene = abonnement.sirene
    cible = statut_sirene_cible(abonnement.statut, sirene.statut)
    if cible is None or cible == sirene.statut:
        return False

    sirene.old_statut = sirene.statut
    sirene.statut = cible
    logger.info("Sirène %s : %s -> %s (abonnement_id=%s)",
                sirene.numero_serie, sirene.old_statut, cible, abonnement.id)
    return True


# ==================== TRANSITIONS (sans commit) ====================

def _creer(sirene_id, ecole_id, site_id, date_debut, date_fin=None, montant=0,
           auto_renouvellement=False, parent=None, notes=None):
    if not sirene_id:
        raise ViolationInvariant("La sirène est obligatoire pour créer un abonnement")

    sirene = _verrouiller_sirene(sirene_id)
    _exiger_aucun_abonnement_vivant(sirene)

    abonnement = Abonnement(
        numero_abonnement=generer_numero_abonnement(),
        sirene_id=sirene.id,
        ecole_id=ecole_id,
        site_id=site_id,
        parent_abonnement_id=parent.id if parent is not None else None,
        date_debut=date_debut,
        date_fin=date_fin or plus_un_an(date_debut),
        montant=montant,
        statut=StatutAbonnement.EN_ATTENTE,
        auto_renouvellement=auto_renouvellement,
        notes=notes,
    )
    db.session.add(abonnement)
    db.session.flush()

    _recalculer_statut_sirene(abonnement)
    return abonnement


def _activer(abonnement):
    if abonnement.statut not in (StatutAbonnement.EN_ATTENTE, StatutAbonnement.SUSPENDU):
        raise ViolationInvariant(
            f"Impossible d'activer un abonnement au statut {abonnement.statut}"
        )
    if not abonnement.has_paiement_valide():
        raise PreconditionNonRemplie(
            "Impossible d'activer l'abonnement : aucun paiement validé"
        )
    if (abonnement.statut == StatutAbonnement.SUSPENDU
            and abonnement.date_fin < horloge.aujourdhui()):
        raise PreconditionNonRemplie(
            "Impossible de réactiver : la période de l'abonnement est terminée"
        )

    sirene = abonnement.sirene
    sirene.old_statut = sirene.statut
    abonnement.statut = StatutAbonnement.ACTIF
    abonnement.ajouter_note(horloge.maintenant(), "Activé")
    _recalculer_statut_sirene(abonnement)

    token = tokens._generer_token(abonnement)
    logger.info("Abonnement activé (abonnement_id=%s, token_id=%s)",
                abonnement.id, token.id if token else None)
    return abonnement


def _expirer(abonnement):
    abonnement.statut = StatutAbonnement.EXPIRE
    abonnement.ajouter_note(horloge.maintenant(), "Expiré")
    tokens._invalider_tokens(abonnement.id)
    _recalculer_statut_sirene(abonnement)
    return abonnement


def _renouveler(ancien):
    if not ancien.can_be_renewed():
        raise ViolationInvariant(
            f"L'abonnement {ancien.numero_abonnement} ({ancien.statut}) ne peut pas être renouvelé"
        )

    date_debut = ancien.date_fin + timedelta(days=1)
    nouveau = _creer(
        sirene_id=ancien.sirene_id,
        ecole_id=ancien.ecole_id,
        site_id=ancien.site_id,
        date_debut=date_debut,
        date_fin=plus_un_an(date_debut),
        montant=ancien.montant,
        auto_renouvellement=ancien.auto_renouvellement,
        parent=ancien,
        notes=f"Renouvellement de {ancien.numero_abonnement}",
    )
    logger.info("Abonnement renouvelé (ancien_id=%s, nouveau_id=%s)", ancien.id, nouveau.id)
    return nouveau


# ==================== TRANSITIONS PUBLIQUES ====================

def creer_abonnement(data):
    valid, errors = AbonnementRules.validate_create(data)
    if not valid:
        raise ViolationInvariant("Données d'abonnement invalides", errors)

    parent = None
    with transaction('creer_abonnement', sirene_id=data.get('sirene_id')):
        if data.get('parent_abonnement_id'):
            parent = db.session.get(Abonnement, data['parent_abonnement_id'])
            if parent is None or parent.deleted_at is not None:
                raise RessourceIntrouvable("Abonnement parent introuvable")
            if not parent.can_be_renewed():
                raise ViolationInvariant(
                    f"L'abonnement parent ({parent.statut}) ne peut pas être renouvelé"
                )

        abonnement = _creer(
            sirene_id=data['sirene_id'],
            ecole_id=data['ecole_id'],
            site_id=data['site_id'],
            date_debut=horloge.lire_date(data['date_debut']),
            date_fin=horloge.lire_date(data['date_fin']) if data.get('date_fin') else None,
            montant=Decimal(str(data.get('montant', 0))),
            auto_renouvellement=bool(data.get('auto_renouvellement', False)),
            parent=parent,
            notes=data.get('notes'),
        )
    return abonnement


def activer(abonnement_id):
    with transaction('activer_abonnement', abonnement_id=abonnement_id):
        abonnement = _activer(_charger(abonnement_id))
    return abonnement


def suspendre(abonnement_id, raison=None):
    with transaction('suspendre_abonnement', abonnement_id=abonnement_id):
        abonnement = _charger(abonnement_id)
        if abonnement.statut != StatutAbonnement.ACTIF:
            raise ViolationInvariant(
                f"Seul un abonnement actif peut être suspendu (statut : {abonnement.statut})"
            )

        abonnement.statut = StatutAbonnement.SUSPENDU
        abonnement.ajouter_note(horloge.maintenant(), f"Suspendu: {raison or 'non précisée'}")
        tokens._invalider_tokens(abonnement.id)
    return abonnement


def reactiver(abonnement_id):
    with transaction('reactiver_abonnement', abonnement_id=abonnement_id):
        abonnement = _charger(abonnement_id)
        if abonnement.statut != StatutAbonnement.SUSPENDU:
            raise ViolationInvariant("Seul un abonnement suspendu peut être réactivé")
        _activer(abonnement)
    return abonnement


def annuler(abonnement_id, raison=None):
    with transaction('annuler_abonnement', abonnement_id=abonnement_id):
        abonnement = _charger(abonnement_id)
        if not abonnement.can_be_cancelled():
            raise ViolationInvariant(
                f"Impossible d'annuler un abonnement au statut {abonnement.statut}"
            )

        abonnement.statut = StatutAbonnement.ANNULE
        abonnement.date_fin = horloge.aujourdhui()
        abonnement.ajouter_note(horloge.maintenant(), f"Annulé: {raison or 'non précisée'}")
        tokens._invalider_tokens(abonnement.id)
        _recalculer_statut_sirene(abonnement)
    return abonnement


def renouveler(abonnement_id):
    with transaction('renouveler_abonnement', abonnement_id=abonnement_id):
        nouveau = _renouveler(_charger(abonnement_id))
    return nouveau


def supprimer(abonnement_id):
    """Suppression logique : libère l'index d'unicité sans toucher au numéro"""
    with transaction('supprimer_abonnement', abonnement_id=abonnement_id):
        abonnement = _charger(abonnement_id)
        if abonnement.statut == StatutAbonnement.ACTIF:
            raise ViolationInvariant("Un abonnement actif ne peut pas être supprimé")
        tokens._invalider_tokens(abonnement.id)
        abonnement.deleted_at = horloge.maintenant_utc()
    return abonnement


# ==================== TÂCHES PÉRIODIQUES (idempotentes) ====================

def marquer_expires():
    """ACTIF dont date_fin est passée -> EXPIRE"""
    aujourd_hui = horloge.aujourdhui()
    with transaction('marquer_expires'):
        expires = Abonnement.query.filter(
            Abonnement.statut == StatutAbonnement.ACTIF,
            Abonnement.date_fin < aujourd_hui,
            Abonnement.deleted_at.is_(None),
        ).all()
        for abonnement in expires:
            _verrouiller_sirene(abonnement.sirene_id)
            _expirer(abonnement)

    logger.info("%d abonnement(s) marqué(s) expiré(s)", len(expires))
    return len(expires)


def auto_renouveler():
    """
    Renouvelle les abonnements expirés avec auto_renouvellement, une seule fois,
    et seulement si la sirène n'a pas déjà un autre abonnement vivant.
    """
    crees = []
    with transaction('auto_renouveler'):
        candidats = Abonnement.query.filter(
            Abonnement.statut == StatutAbonnement.EXPIRE,
            Abonnement.auto_renouvellement.is_(True),
            Abonnement.deleted_at.is_(None),
            ~Abonnement.renouvellements.any(),
        ).all()
        for abonnement in candidats:
            if abonnement_vivant(abonnement.sirene_id) is not None:
                continue
            crees.append(_renouveler(abonnement))

    logger.info("%d abonnement(s) renouvelé(s) automatiquement", len(crees))
    return crees


# ==================== REQUÊTES ET CALCULS ====================

def jours_restants(abonnement):
    return max(0, (abonnement.date_fin - horloge.aujourdhui()).days)


def est_valide(abonnement):
    return (abonnement.statut == StatutAbonnement.ACTIF
            and abonnement.date_fin >= horloge.aujourdhui())


def prix_renouvellement(abonnement):
    """Remise de 5 % si le renouvellement intervient plus de 30 jours avant la fin"""
    montant = Decimal(abonnement.montant or 0)
    limite = horloge.aujourdhui() + timedelta(days=JOURS_RENOUVELLEMENT_ANTICIPE)
    if abonnement.date_fin > limite:
        montant = montant * REMISE_RENOUVELLEMENT_ANTICIPE
    return montant.quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)


def abonnement_actif_ecole(ecole_id):
    return Abonnement.query.filter(
        Abonnement.ecole_id == ecole_id,
        Abonnement.statut == StatutAbonnement.ACTIF,
        Abonnement.deleted_at.is_(None),
    ).order_by(Abonnement.date_fin.desc()).first()


def abonnement_actif_sirene(sirene_id):
    return Abonnement.query.filter(
        Abonnement.sirene_id == sirene_id,
        Abonnement.statut == StatutAbonnement.ACTIF,
        Abonnement.deleted_at.is_(None),
    ).first()


def expirant_bientot(jours=30):
    aujourd_hui = horloge.aujourdhui()
    return Abonnement.query.filter(
        Abonnement.statut == StatutAbonnement.ACTIF,
        Abonnement.date_fin >= aujourd_hui,
        Abonnement.date_fin <= aujourd_hui + timedelta(days=jours),
        Abonnement.deleted_at.is_(None),
    ).order_by(Abonnement.date_fin).all()


def expires_non_traites():
    """ACTIF mais date_fin passée : en attente du prochain marquer_expires()"""
    return Abonnement.query.filter(
        Abonnement.statut == StatutAbonnement.ACTIF,
        Abonnement.date_fin < horloge.aujourdhui(),
        Abonnement.deleted_at.is_(None),
    ).all()


def revenus_periode(debut, fin):
    total = db.session.query(func.coalesce(func.sum(Paiement.montant), 0)).filter(
        Paiement.statut == StatutPaiement.VALIDE,
        Paiement.date_validation >= debut,
        Paiement.date_validation < fin,
    ).scalar()
    return Decimal(total or 0)


def taux_renouvellement(mois=3):
    """Part des abonnements terminés sur la période qui ont été renouvelés (en %)"""
    aujourd_hui = horloge.aujourdhui()
    termines = Abonnement.query.filter(
        Abonnement.statut.in_(StatutAbonnement.TERMINAUX),
        Abonnement.date_fin >= aujourd_hui - timedelta(days=30 * mois),
        Abonnement.date_fin <= aujourd_hui,
        Abonnement.deleted_at.is_(None),
    )
    total = termines.count()
    if total == 0:
        return 0.0
    renouveles = termines.filter(Abonnement.renouvellements.any()).count()
    return round(renouveles * 100.0 / total, 2)


def statistiques(base_query=None):
    query = base_query if base_query is not None else Abonnement.query
    query = query.filter(Abonnement.deleted_at.is_(None))

    aujourd_hui = horloge.aujourdhui()
    debut_mois = horloge.maintenant_utc().replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    fin_mois = (debut_mois + timedelta(days=32)).replace(day=1)

    par_statut = {
        statut: query.filter(Abonnement.statut == statut).count()
        for statut in (StatutAbonnement.EN_ATTENTE, StatutAbonnement.ACTIF,
                       StatutAbonnement.SUSPENDU, StatutAbonnement.EXPIRE,
                       StatutAbonnement.ANNULE)
    }
    return {
        'total': query.count(),
        'par_statut': par_statut,
        'expirant_7_jours': query.filter(
            Abonnement.statut == StatutAbonnement.ACTIF,
            Abonnement.date_fin >= aujourd_hui,
            Abonnement.date_fin <= aujourd_hui + timedelta(days=JOURS_ALERTE_EXPIRATION),
        ).count(),
        'revenus_mois': float(revenus_periode(debut_mois, fin_mois)),
        'taux_renouvellement': taux_renouvellement(),
    }
