"""
Sirènes - Pytest Configuration
Fixtures partagées pour tous les tests : application sur SQLite en mémoire,
fabriques d'objets et clients connectés par type de compte.
"""

import pytest
from flask import g
from werkzeug.security import generate_password_hash

from app import create_app
from models import (
    db, Ecole, Site, Sirene, Technicien, Compte, Paiement, StatutPaiement,
)
from services import abonnements, horloge

MOT_DE_PASSE = 'secret-123'


# ==================== FABRIQUES ====================

def creer_ecole(code='ECO-001', nom='École Primaire Kaloum'):
    ecole = Ecole(nom=nom, code=code, pays_code='GN')
    db.session.add(ecole)
    db.session.commit()
    return ecole


def creer_site(ecole, nom='Site principal'):
    site = Site(ecole_id=ecole.id, nom=nom, est_principale=True)
    db.session.add(site)
    db.session.commit()
    return site


def creer_sirene(numero_serie='SRN-0001', site=None):
    sirene = Sirene(numero_serie=numero_serie, modele='S-200',
                    site_id=site.id if site else None)
    db.session.add(sirene)
    db.session.commit()
    return sirene


def creer_technicien(nom='Mamadou Diallo'):
    technicien = Technicien(nom=nom, specialite='électronique')
    db.session.add(technicien)
    db.session.commit()
    return technicien


def creer_compte(email, type_compte, ecole=None, technicien=None):
    compte = Compte(
        email=email,
        nom=email.split('@')[0],
        password_hash=generate_password_hash(MOT_DE_PASSE),
        type_compte=type_compte,
        ecole_id=ecole.id if ecole else None,
        technicien_id=technicien.id if technicien else None,
    )
    db.session.add(compte)
    db.session.commit()
    return compte


def creer_abonnement(sirene, date_debut=None, date_fin=None, montant='120000',
                     auto_renouvellement=False):
    site = sirene.site
    data = {
        'sirene_id': sirene.id,
        'ecole_id': site.ecole_id,
        'site_id': site.id,
        'date_debut': (date_debut or horloge.aujourdhui()).isoformat(),
        'montant': montant,
        'auto_renouvellement': auto_renouvellement,
    }
    if date_fin is not None:
        data['date_fin'] = date_fin.isoformat()
    return abonnements.creer_abonnement(data)


def ajouter_paiement_valide(abonnement, numero=None):
    instant = horloge.maintenant_utc()
    paiement = Paiement(
        abonnement_id=abonnement.id,
        numero_transaction=numero or f"TEST-{abonnement.id}-{abonnement.paiements.count() + 1}",
        montant=abonnement.montant,
        moyen='especes',
        statut=StatutPaiement.VALIDE,
        date_paiement=instant,
        date_validation=instant,
        metadonnees={},
    )
    db.session.add(paiement)
    db.session.commit()
    return paiement


def creer_abonnement_actif(sirene, **kwargs):
    abonnement = creer_abonnement(sirene, **kwargs)
    ajouter_paiement_valide(abonnement)
    return abonnements.activer(abonnement.id)


def creer_calendrier(date_rentree, date_fin_annee, periodes_vacances=None, jours_feries_defaut=None):
    from services import calendrier

    return calendrier.creer_calendrier({
        'pays_code': 'GN',
        'annee_scolaire': f"{date_rentree.year}-{date_fin_annee.year}",
        'date_rentree': date_rentree.isoformat(),
        'date_fin_annee': date_fin_annee.isoformat(),
        'periodes_vacances': periodes_vacances or [],
        'jours_feries_defaut': jours_feries_defaut or [],
    })


def connecter(client, compte):
    reponse = client.post('/auth/login', json={'email': compte.email, 'password': MOT_DE_PASSE})
    assert reponse.status_code == 200
    return client


# ==================== FIXTURES ====================

@pytest.fixture
def app():
    """Application de test, schéma recréé pour chaque test."""
    application = create_app('testing')

    @application.before_request
    def _oublier_compte_precedent():
        # Le contexte applicatif du test est partagé par toutes les requêtes
        g.pop('_login_user', None)

    with application.app_context():
        db.create_all()
        yield application
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def ecole(app):
    return creer_ecole()


@pytest.fixture
def site(ecole):
    return creer_site(ecole)


@pytest.fixture
def sirene(site):
    return creer_sirene(site=site)


@pytest.fixture
def abonnement_actif(sirene):
    return creer_abonnement_actif(sirene)


@pytest.fixture
def technicien(app):
    return creer_technicien()


@pytest.fixture
def compte_admin(app):
    return creer_compte('admin@sirenes.test', Compte.TYPE_ADMIN)


@pytest.fixture
def compte_ecole(ecole):
    return creer_compte('direction@kaloum.test', Compte.TYPE_ECOLE, ecole=ecole)


@pytest.fixture
def compte_technicien(technicien):
    return creer_compte('tech@sirenes.test', Compte.TYPE_TECHNICIEN, technicien=technicien)


@pytest.fixture
def client_admin(app, compte_admin):
    return connecter(app.test_client(), compte_admin)


@pytest.fixture
def client_ecole(app, compte_ecole):
    return connecter(app.test_client(), compte_ecole)


@pytest.fixture
def client_technicien(app, compte_technicien):
    return connecter(app.test_client(), compte_technicien)


@pytest.fixture
def fige_date(monkeypatch):
    """Fige la date locale des écoles : fige_date(jour)."""
    def _figer(jour):
        monkeypatch.setattr(horloge, 'aujourdhui', lambda: jour)
        return jour
    return _figer

