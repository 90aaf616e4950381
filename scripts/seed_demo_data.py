"""
scripts/seed_demo_data.py - Jeu de données de démonstration

Crée des écoles, leurs sites et sirènes, les comptes de connexion,
un calendrier scolaire avec ses jours fériés, puis des abonnements
payés et activés (donc des tokens) et quelques programmations.

Usage:
    python scripts/seed_demo_data.py [nombre_ecoles]
"""

import os
import sys

# Ajouter le répertoire parent au path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

import random
from datetime import timedelta

from faker import Faker
from werkzeug.security import generate_password_hash

fake = Faker('fr_FR')

from app import create_app
from models import (
    db, Compte, Ecole, Paiement, Site, Sirene, StatutPaiement, StatutSirene, Technicien,
)
from services import abonnements, calendrier, horloge, programmations

# ==================== DONNÉES GUINÉENNES ====================

VILLES = ['Conakry', 'Kindia', 'Labé', 'Kankan', 'Nzérékoré', 'Boké', 'Mamou', 'Faranah']

SPECIALITES = ['Électricité', 'Électronique', 'Réseaux', 'Installation']

JOURS_FERIES = [
    {'intitule_journee': "Fête de l'Indépendance", 'date': '2025-10-02', 'recurrent': True},
    {'intitule_journee': 'Noël', 'date': '2025-12-25', 'recurrent': True},
    {'intitule_journee': "Jour de l'An", 'date': '2026-01-01', 'recurrent': True},
    {'intitule_journee': 'Lundi de Pâques', 'date': '2026-04-06'},
    {'intitule_journee': 'Fête du Travail', 'date': '2026-05-01', 'recurrent': True},
]

VACANCES = [
    {'nom': 'Noël', 'date_debut': '2025-12-22', 'date_fin': '2026-01-04'},
    {'nom': 'Pâques', 'date_debut': '2026-04-04', 'date_fin': '2026-04-12'},
]

HORAIRES_TYPE = [
    {'heure': 8, 'minute': 0, 'jours': [1, 2, 3, 4, 5], 'duree_sonnerie': 5, 'description': 'Entrée'},
    {'heure': 10, 'minute': 0, 'jours': [1, 2, 3, 4, 5], 'duree_sonnerie': 3, 'description': 'Récréation'},
    {'heure': 10, 'minute': 15, 'jours': [1, 2, 3, 4, 5], 'duree_sonnerie': 3},
    {'heure': 12, 'minute': 30, 'jours': [1, 2, 3, 4, 5], 'duree_sonnerie': 5, 'description': 'Sortie'},
    {'heure': 8, 'minute': 0, 'jours': [6], 'duree_sonnerie': 5, 'description': 'Samedi'},
]

MOT_DE_PASSE_DEMO = 'demo-1234'


def create_base_data(nombre_ecoles):
    """Écoles, sites, sirènes et comptes école"""
    print(f"🏗️  Création de {nombre_ecoles} écoles...")

    sirenes = []
    for i in range(nombre_ecoles):
        ville = random.choice(VILLES)
        ecole = Ecole(
            nom=f"École {fake.last_name()} de {ville}",
            code=f"ECO-{i + 1:03d}",
            telephone=fake.phone_number(),
            email=fake.unique.email(),
            pays_code='GN',
        )
        db.session.add(ecole)
        db.session.flush()

        for j in range(random.randint(1, 2)):
            site = Site(
                ecole_id=ecole.id,
                nom='Site principal' if j == 0 else f"Annexe {fake.street_name()}",
                adresse=f"{fake.street_address()}, {ville}",
                est_principale=(j == 0),
            )
            db.session.add(site)
            db.session.flush()

            sirene = Sirene(
                numero_serie=f"SRN-{ecole.id:03d}-{j + 1}",
                modele=random.choice(['SR-100', 'SR-200']),
                statut=StatutSirene.INSTALLEE,
                site_id=site.id,
                date_installation=horloge.aujourdhui() - timedelta(days=random.randint(30, 400)),
            )
            db.session.add(sirene)
            sirenes.append(sirene)

        db.session.add(Compte(
            email=f"direction@{ecole.code.lower()}.demo",
            nom=fake.name(),
            password_hash=generate_password_hash(MOT_DE_PASSE_DEMO),
            type_compte=Compte.TYPE_ECOLE,
            ecole_id=ecole.id,
        ))

    db.session.commit()
    print(f"✅ {len(sirenes)} sirènes installées")
    return sirenes


def create_staff(nombre_techniciens=5):
    """Administrateur et techniciens"""
    print(f"\n👥 Création de {nombre_techniciens} techniciens...")

    db.session.add(Compte(
        email='admin@sirenes.demo',
        nom='Administrateur',
        password_hash=generate_password_hash(MOT_DE_PASSE_DEMO),
        type_compte=Compte.TYPE_ADMIN,
    ))

    for i in range(nombre_techniciens):
        technicien = Technicien(
            nom=fake.name(),
            telephone=fake.phone_number(),
            specialite=random.choice(SPECIALITES),
        )
        db.session.add(technicien)
        db.session.flush()
        db.session.add(Compte(
            email=f"technicien{i + 1}@sirenes.demo",
            nom=technicien.nom,
            password_hash=generate_password_hash(MOT_DE_PASSE_DEMO),
            type_compte=Compte.TYPE_TECHNICIEN,
            technicien_id=technicien.id,
        ))

    db.session.commit()
    print(f"✅ {nombre_techniciens} techniciens créés")


def create_calendrier():
    print("\n📅 Création du calendrier scolaire 2025-2026...")
    cal = calendrier.creer_calendrier({
        'pays_code': 'GN',
        'annee_scolaire': '2025-2026',
        'description': 'Calendrier national',
        'date_rentree': '2025-10-01',
        'date_fin_annee': '2026-06-30',
        'periodes_vacances': VACANCES,
        'jours_feries_defaut': JOURS_FERIES,
    })
    print(f"✅ Calendrier créé avec {len(JOURS_FERIES)} jours fériés")
    return cal


def create_abonnements(sirenes, cal):
    """Un abonnement par sirène ; les deux tiers sont payés, activés et programmés"""
    print(f"\n💰 Création de {len(sirenes)} abonnements...")

    actifs = 0
    for sirene in sirenes:
        abonnement = abonnements.creer_abonnement({
            'sirene_id': sirene.id,
            'ecole_id': sirene.site.ecole_id,
            'site_id': sirene.site_id,
            'date_debut': (horloge.aujourdhui() - timedelta(days=random.randint(0, 200))).isoformat(),
            'montant': random.choice([100000, 120000, 150000]),
            'auto_renouvellement': random.random() < 0.3,
        })
        if random.random() < 0.33:
            continue

        instant = horloge.maintenant_utc()
        db.session.add(Paiement(
            abonnement_id=abonnement.id,
            numero_transaction=f"DEMO-{abonnement.numero_abonnement}",
            montant=abonnement.montant,
            moyen=random.choice(['especes', 'virement']),
            statut=StatutPaiement.VALIDE,
            date_paiement=instant,
            date_validation=instant,
            metadonnees={},
        ))
        db.session.commit()
        abonnements.activer(abonnement.id)

        programmations.creer_programmation(sirene.id, {
            'nom_programmation': 'Horaires de cours',
            'horaires_sonneries': HORAIRES_TYPE,
            'calendrier_id': cal.id,
        })
        actifs += 1

    print(f"✅ {actifs} abonnements actifs avec programmation")
    return actifs


def main():
    """Script principal"""
    nombre_ecoles = int(sys.argv[1]) if len(sys.argv) > 1 else 20

    print("=" * 60)
    print("🚀 JEU DE DONNÉES DE DÉMONSTRATION - SIRÈNES")
    print("=" * 60)

    app = create_app(os.getenv('FLASK_CONFIG', 'development'))
    with app.app_context():
        db.create_all()

        sirenes = create_base_data(nombre_ecoles)
        create_staff()
        cal = create_calendrier()
        actifs = create_abonnements(sirenes, cal)

        print("\n" + "=" * 60)
        print("✅ GÉNÉRATION TERMINÉE AVEC SUCCÈS !")
        print("=" * 60)
        print("📊 Total généré:")
        print(f"   - Écoles: {nombre_ecoles}")
        print(f"   - Sirènes: {len(sirenes)}")
        print(f"   - Abonnements actifs: {actifs}")
        print(f"   - Mot de passe des comptes: {MOT_DE_PASSE_DEMO}")


if __name__ == '__main__':
    main()
