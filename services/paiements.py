"""
services/paiements.py - Paiements d'abonnement (passerelle CinetPay)

L'initiation appelle la passerelle puis rend la main : l'activation de
l'abonnement arrive plus tard par la notification (webhook), qui est
idempotente sur le numéro de transaction.
"""

import logging
import secrets
import time
from decimal import Decimal, InvalidOperation

import httpx
from flask import current_app

from models import db, Abonnement, Paiement, StatutAbonnement, StatutPaiement
from services import abonnements, horloge
from services.exceptions import (
    ErreurPasserelle, RessourceIntrouvable, PreconditionNonRemplie, ViolationInvariant,
)
from services.transaction import transaction

logger = logging.getLogger(__name__)

STATUTS_ACCEPTES = ('ACCEPTED', '00')


# ==================== CLIENT PASSERELLE ====================

class CinetPayClient:
    """Client HTTP minimal de l'API checkout CinetPay"""

    def __init__(self, api_key, site_id, api_url, check_url, timeout=10):
        self.api_key = api_key
        self.site_id = site_id
        self.api_url = api_url
        self.check_url = check_url
        self.timeout = timeout

    @classmethod
    def depuis_config(cls, config):
        return cls(
            api_key=config['CINETPAY_API_KEY'],
            site_id=config['CINETPAY_SITE_ID'],
            api_url=config['CINETPAY_API_URL'],
            check_url=config['CINETPAY_CHECK_URL'],
            timeout=config['CINETPAY_TIMEOUT'],
        )

    def _post(self, url, payload):
        try:
            reponse = httpx.post(url, json=payload, timeout=self.timeout)
            reponse.raise_for_status()
            return reponse.json()
        except httpx.HTTPError as e:
            logger.error("CinetPay injoignable (%s): %s", url, e)
            raise ErreurPasserelle("Passerelle de paiement indisponible, réessayez plus tard") from e
        except ValueError as e:
            logger.error("Réponse CinetPay illisible (%s)", url)
            raise ErreurPasserelle("Réponse invalide de la passerelle de paiement") from e

    def initier(self, transaction_id, montant, devise, description, notify_url, return_url):
        data = self._post(self.api_url, {
            'apikey': self.api_key,
            'site_id': self.site_id,
            'transaction_id': transaction_id,
            'amount': int(montant),
            'currency': devise,
            'description': description,
            'notify_url': notify_url,
            'return_url': return_url,
            'channels': 'ALL',
        })

        if str(data.get('code')) != '201':
            logger.error("CinetPay a refusé la transaction %s : %s",
                         transaction_id, data.get('message'))
            raise ErreurPasserelle(
                f"Paiement refusé par la passerelle : {data.get('message', 'erreur inconnue')}"
            )

        donnees = data.get('data') or {}
        if not donnees.get('payment_url'):
            raise ErreurPasserelle("Réponse de la passerelle incomplète (payment_url manquant)")

        return {
            'payment_url': donnees['payment_url'],
            'payment_token': donnees.get('payment_token'),
        }

    def verifier(self, transaction_id):
        data = self._post(self.check_url, {
            'apikey': self.api_key,
            'site_id': self.site_id,
            'transaction_id': transaction_id,
        })
        return data.get('data') or {}


def client_passerelle():
    return CinetPayClient.depuis_config(current_app.config)


# ==================== INITIATION ====================

def generer_numero_transaction(abonnement):
    return f"ABN-{abonnement.id:08d}-{int(time.time())}-{secrets.token_hex(3).upper()}"


def initier_paiement(abonnement_id, return_url=None):
    """
    Crée le paiement en attente et obtient l'URL de paiement.

    Si la passerelle échoue, le paiement n'est pas conservé (rollback).
    """
    with transaction('initier_paiement', abonnement_id=abonnement_id):
        abonnement = db.session.get(Abonnement, abonnement_id)
        if abonnement is None or abonnement.deleted_at is not None:
            raise RessourceIntrouvable("Abonnement introuvable")
        if abonnement.statut != StatutAbonnement.EN_ATTENTE:
            raise PreconditionNonRemplie("L'abonnement n'est pas en attente de paiement")

        paiement = Paiement(
            abonnement_id=abonnement.id,
            numero_transaction=generer_numero_transaction(abonnement),
            montant=abonnement.montant,
            moyen='cinetpay',
            statut=StatutPaiement.EN_ATTENTE,
            metadonnees={},
        )
        db.session.add(paiement)
        db.session.flush()

        base_url = current_app.config['APP_URL'].rstrip('/')
        resultat = client_passerelle().initier(
            transaction_id=paiement.numero_transaction,
            montant=abonnement.montant,
            devise=current_app.config['CINETPAY_DEVISE'],
            description=f"Abonnement {abonnement.numero_abonnement}",
            notify_url=f"{base_url}/api/paiements/cinetpay/notify",
            return_url=return_url or f"{base_url}/api/abonnements/{abonnement.id}",
        )
        paiement.metadonnees = {'payment_token': resultat['payment_token']}

    logger.info("Paiement initié (abonnement_id=%s, transaction_id=%s)",
                abonnement_id, paiement.numero_transaction)
    return paiement, resultat['payment_url']


# ==================== NOTIFICATION (idempotente) ====================

def statut_depuis_passerelle(statut):
    return StatutPaiement.VALIDE if str(statut).upper() in STATUTS_ACCEPTES else StatutPaiement.ECHOUE


def _appliquer_statut(paiement, nouveau_statut, details):
    """
    Un paiement validé n'est jamais rétrogradé ; une re-livraison ne fait
    que compléter l'activation si elle n'a pas eu lieu.
    """
    abonnement = paiement.abonnement

    if paiement.statut == StatutPaiement.VALIDE:
        if nouveau_statut != StatutPaiement.VALIDE:
            logger.warning("Notification %s ignorée : paiement déjà validé (transaction_id=%s)",
                           nouveau_statut, paiement.numero_transaction)
            return paiement
    else:
        instant = horloge.maintenant_utc()
        paiement.statut = nouveau_statut
        paiement.metadonnees = {**(paiement.metadonnees or {}), 'notification': details}
        if nouveau_statut == StatutPaiement.VALIDE:
            paiement.reference_externe = details.get('cpm_payid') or details.get('reference')
            paiement.date_paiement = instant
            paiement.date_validation = instant

    if nouveau_statut == StatutPaiement.VALIDE and abonnement.statut == StatutAbonnement.EN_ATTENTE:
        abonnements._verrouiller_sirene(abonnement.sirene_id)
        abonnements._activer(abonnement)

    logger.info("Notification traitée (transaction_id=%s, statut=%s, abonnement=%s)",
                paiement.numero_transaction, paiement.statut, abonnement.statut)
    return paiement


def traiter_notification(payload):
    """
    Accepte {transaction_id, status} ou le format CinetPay {cpm_trans_id, cpm_trans_status}.
    """
    transaction_id = payload.get('transaction_id') or payload.get('cpm_trans_id')
    statut = payload.get('status') or payload.get('cpm_trans_status')
    if not transaction_id:
        raise ViolationInvariant("Notification sans identifiant de transaction")

    with transaction('notification_paiement', transaction_id=transaction_id):
        paiement = (Paiement.query
                    .filter_by(numero_transaction=transaction_id)
                    .with_for_update()
                    .first())
        if paiement is None:
            raise RessourceIntrouvable(f"Transaction {transaction_id} introuvable")

        _appliquer_statut(paiement, statut_depuis_passerelle(statut), dict(payload))
    return paiement


def valider_paiement_manuel(paiement_id, compte_id=None):
    """Validation par un administrateur d'un paiement hors passerelle"""
    with transaction('valider_paiement_manuel', paiement_id=paiement_id):
        paiement = db.session.get(Paiement, paiement_id)
        if paiement is None:
            raise RessourceIntrouvable("Paiement introuvable")
        _appliquer_statut(paiement, StatutPaiement.VALIDE,
                          {'reference': f"MANUEL-{paiement.id}", 'valide_par': compte_id})
    return paiement


def enregistrer_paiement(abonnement_id, montant, moyen, reference=None):
    """Paiement hors ligne (espèces, virement) en attente de validation"""
    if not abonnement_id:
        raise ViolationInvariant("abonnement_id est obligatoire")
    try:
        montant = Decimal(str(montant))
    except InvalidOperation as e:
        raise ViolationInvariant("Montant invalide") from e
    if montant <= 0:
        raise ViolationInvariant("Le montant doit être positif")

    with transaction('enregistrer_paiement', abonnement_id=abonnement_id):
        abonnement = db.session.get(Abonnement, abonnement_id)
        if abonnement is None or abonnement.deleted_at is not None:
            raise RessourceIntrouvable("Abonnement introuvable")
        paiement = Paiement(
            abonnement_id=abonnement.id,
            numero_transaction=reference or f"{generer_numero_transaction(abonnement)}-M",
            montant=montant,
            moyen=moyen,
            statut=StatutPaiement.EN_ATTENTE,
            metadonnees={},
        )
        db.session.add(paiement)
    return paiement


def verifier_transaction(transaction_id):
    """Interroge la passerelle sur l'état d'une transaction (lecture seule)"""
    paiement = Paiement.query.filter_by(numero_transaction=transaction_id).first()
    if paiement is None:
        raise RessourceIntrouvable(f"Transaction {transaction_id} introuvable")
    return client_passerelle().verifier(transaction_id)
