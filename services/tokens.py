"""
services/tokens.py - Émission des tokens sirène

Texte clair : VERSION|ECOLE_ID|NUMERO_SERIE|EPOCH_DEBUT|EPOCH_FIN,
crypté par services.cryptage. On stocke la chaîne cryptée et son SHA-256
(recherche sans décryptage). Au plus un token actif par abonnement.
"""

import logging

from flask import current_app

from models import db, Abonnement, Sirene, TokenSirene, StatutAbonnement
from services import horloge
from services.cryptage import crypter, hash_chaine
from services.exceptions import (
    RessourceIntrouvable, PreconditionNonRemplie, AuthentificationSireneRefusee,
)
from services.transaction import transaction

logger = logging.getLogger(__name__)


def construire_texte_clair(abonnement):
    return '|'.join([
        str(current_app.config['SIRENE_TOKEN_VERSION']),
        str(abonnement.ecole_id),
        abonnement.sirene.numero_serie,
        str(horloge.epoch_local(abonnement.date_debut)),
        str(horloge.epoch_local(abonnement.date_fin, fin_de_journee=True)),
    ])


# ==================== OPÉRATIONS INTERNES (sans commit) ====================

def _invalider_tokens(abonnement_id):
    """Passe tous les tokens actifs de l'abonnement à actif=False"""
    return TokenSirene.query.filter_by(abonnement_id=abonnement_id, actif=True).update(
        {'actif': False, 'date_expiration': horloge.aujourdhui()},
        synchronize_session='fetch',
    )


def _generer_token(abonnement):
    """
    Désactive les anciens tokens puis crée le nouveau, dans la même transaction.

    Returns:
        TokenSirene, ou None si aucun paiement validé (l'appelant diffère)
    """
    if not abonnement.has_paiement_valide():
        logger.info("Token non généré : aucun paiement validé (abonnement_id=%s)", abonnement.id)
        return None

    _invalider_tokens(abonnement.id)

    chaine = crypter(construire_texte_clair(abonnement), current_app.config['SIRENE_CLE_CRYPTAGE'])
    token = TokenSirene(
        abonnement_id=abonnement.id,
        sirene_id=abonnement.sirene_id,
        site_id=abonnement.site_id,
        token_crypte=chaine,
        token_hash=hash_chaine(chaine),
        date_debut=abonnement.date_debut,
        date_fin=abonnement.date_fin,
        date_generation=horloge.maintenant_utc(),
        date_expiration=abonnement.date_fin,
        actif=True,
    )
    db.session.add(token)
    db.session.flush()

    logger.info("Token généré (abonnement_id=%s, sirene=%s)",
                abonnement.id, abonnement.sirene.numero_serie)
    return token


# ==================== OPÉRATIONS PUBLIQUES ====================

def token_actif(abonnement_id):
    return TokenSirene.query.filter_by(abonnement_id=abonnement_id, actif=True).first()


def regenerer_token(abonnement_id):
    """Régénération explicite : abonnement ACTIF et paiement validé requis"""
    with transaction('regenerer_token', abonnement_id=abonnement_id):
        abonnement = db.session.get(Abonnement, abonnement_id)
        if abonnement is None or abonnement.deleted_at is not None:
            raise RessourceIntrouvable("Abonnement introuvable")

        if abonnement.statut != StatutAbonnement.ACTIF:
            raise PreconditionNonRemplie(
                "Impossible de régénérer le token : l'abonnement n'est pas actif"
            )
        if not abonnement.has_paiement_valide():
            raise PreconditionNonRemplie(
                "Impossible de régénérer le token : aucun paiement validé"
            )

        token = _generer_token(abonnement)
    return token


def invalider_tokens(abonnement_id):
    with transaction('invalider_tokens', abonnement_id=abonnement_id):
        nombre = _invalider_tokens(abonnement_id)
    return nombre


def verifier_token_presente(chaine, numero_serie=None):
    """
    Contrat de vérification côté sirène.

    Returns:
        (TokenSirene, Abonnement, Sirene)

    Raises:
        AuthentificationSireneRefusee: pour tout échec (jamais d'erreur 500)
    """
    if not chaine:
        raise AuthentificationSireneRefusee("Token manquant")

    aujourd_hui = horloge.aujourdhui()
    token = TokenSirene.query.filter_by(token_hash=hash_chaine(chaine.strip()), actif=True).first()
    if token is None:
        raise AuthentificationSireneRefusee("Token invalide")

    if token.date_expiration < aujourd_hui:
        raise AuthentificationSireneRefusee("Token expiré")

    abonnement = token.abonnement
    if (abonnement is None or abonnement.deleted_at is not None
            or abonnement.statut != StatutAbonnement.ACTIF
            or abonnement.date_fin < aujourd_hui):
        raise AuthentificationSireneRefusee("Aucun abonnement actif pour ce token")

    sirene = db.session.get(Sirene, token.sirene_id)
    if sirene is None or sirene.deleted_at is not None:
        raise AuthentificationSireneRefusee("Sirène introuvable")

    if numero_serie is not None and sirene.numero_serie != numero_serie:
        raise AuthentificationSireneRefusee("Le token ne correspond pas à cette sirène")

    return token, abonnement, sirene
