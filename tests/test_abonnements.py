"""
Tests du cycle de vie des abonnements.
"""

from datetime import date, timedelta
from decimal import Decimal

import pytest

from conftest import (
    ajouter_paiement_valide, creer_abonnement, creer_abonnement_actif, creer_sirene,
)
from models import db, Abonnement, StatutAbonnement, StatutSirene, TokenSirene
from services import abonnements, horloge
from services.transaction import transaction
from services.exceptions import (
    ConflitConcurrence, PreconditionNonRemplie, RessourceIntrouvable, ViolationInvariant,
)


def _vivants(sirene_id):
    return Abonnement.query.filter(
        Abonnement.sirene_id == sirene_id,
        Abonnement.statut.in_(StatutAbonnement.VIVANTS),
        Abonnement.deleted_at.is_(None),
    ).count()


class TestCreation:
    """Création et unicité de l'abonnement vivant."""

    def test_creation_en_attente_reserve_la_sirene(self, sirene):
        abonnement = creer_abonnement(sirene)

        assert abonnement.statut == StatutAbonnement.EN_ATTENTE
        assert abonnement.numero_abonnement.startswith('ABN-')
        assert abonnement.date_fin == abonnements.plus_un_an(abonnement.date_debut)
        assert sirene.statut == StatutSirene.RESERVEE

    def test_sirene_obligatoire(self, site):
        with pytest.raises(ViolationInvariant) as exc:
            abonnements.creer_abonnement({
                'ecole_id': site.ecole_id, 'site_id': site.id, 'date_debut': '2026-01-01',
            })

        assert "sirene_id" in ' '.join(exc.value.erreurs)

    def test_sirene_inconnue(self, site):
        with pytest.raises(RessourceIntrouvable):
            abonnements.creer_abonnement({
                'sirene_id': 999, 'ecole_id': site.ecole_id, 'site_id': site.id,
                'date_debut': '2026-01-01',
            })

    def test_un_seul_abonnement_vivant_par_sirene(self, sirene):
        creer_abonnement(sirene)

        with pytest.raises(ViolationInvariant):
            creer_abonnement(sirene)

        assert _vivants(sirene.id) == 1

    def test_index_unique_bloque_un_second_vivant(self, sirene):
        """La base refuse elle-même un second abonnement vivant."""
        premier = creer_abonnement(sirene)

        with pytest.raises(ConflitConcurrence):
            with transaction('test_course', sirene_id=sirene.id):
                db.session.add(Abonnement(
                    numero_abonnement='ABN-COURSE', sirene_id=sirene.id,
                    ecole_id=premier.ecole_id, site_id=premier.site_id,
                    date_debut=premier.date_debut, date_fin=premier.date_fin,
                    statut=StatutAbonnement.EN_ATTENTE,
                ))

        assert _vivants(sirene.id) == 1

    def test_date_fin_avant_date_debut(self, sirene):
        with pytest.raises(ViolationInvariant):
            creer_abonnement(sirene, date_debut=date(2026, 6, 1), date_fin=date(2026, 5, 1))

    def test_plus_un_an_29_fevrier(self):
        assert abonnements.plus_un_an(date(2028, 2, 29)) == date(2029, 2, 28)


class TestActivation:
    """Activation, suspension, réactivation."""

    def test_activation_sans_paiement_refusee(self, sirene):
        abonnement = creer_abonnement(sirene)

        with pytest.raises(PreconditionNonRemplie):
            abonnements.activer(abonnement.id)

        db.session.refresh(abonnement)
        assert abonnement.statut == StatutAbonnement.EN_ATTENTE
        assert abonnement.tokens.count() == 0

    def test_activation_emet_un_token(self, sirene):
        abonnement = creer_abonnement(sirene)
        ajouter_paiement_valide(abonnement)

        abonnements.activer(abonnement.id)

        assert abonnement.statut == StatutAbonnement.ACTIF
        assert sirene.statut == StatutSirene.RESERVEE
        assert abonnement.tokens.filter_by(actif=True).count() == 1
        assert "Activé" in abonnement.notes

    def test_activation_depuis_actif_refusee(self, abonnement_actif):
        with pytest.raises(ViolationInvariant):
            abonnements.activer(abonnement_actif.id)

    def test_suspension_invalide_les_tokens(self, abonnement_actif, sirene):
        abonnements.suspendre(abonnement_actif.id, "impayé partiel")

        assert abonnement_actif.statut == StatutAbonnement.SUSPENDU
        assert abonnement_actif.tokens.filter_by(actif=True).count() == 0
        assert sirene.statut == StatutSirene.RESERVEE
        assert "impayé partiel" in abonnement_actif.notes

    def test_suspension_seulement_depuis_actif(self, sirene):
        abonnement = creer_abonnement(sirene)

        with pytest.raises(ViolationInvariant):
            abonnements.suspendre(abonnement.id)

    def test_reactivation_reemet_un_token(self, abonnement_actif):
        abonnements.suspendre(abonnement_actif.id)
        abonnements.reactiver(abonnement_actif.id)

        assert abonnement_actif.statut == StatutAbonnement.ACTIF
        assert abonnement_actif.tokens.filter_by(actif=True).count() == 1
        assert abonnement_actif.tokens.count() == 2

    def test_reactivation_apres_fin_refusee(self, abonnement_actif, fige_date):
        abonnements.suspendre(abonnement_actif.id)
        fige_date(abonnement_actif.date_fin + timedelta(days=1))

        with pytest.raises(PreconditionNonRemplie):
            abonnements.reactiver(abonnement_actif.id)

        assert abonnement_actif.statut == StatutAbonnement.SUSPENDU

    def test_activation_directe_apres_fin_refusee(self, abonnement_actif, fige_date):
        """activer() applique la même règle de période que reactiver()"""
        abonnements.suspendre(abonnement_actif.id)
        fige_date(abonnement_actif.date_fin + timedelta(days=1))

        with pytest.raises(PreconditionNonRemplie):
            abonnements.activer(abonnement_actif.id)

        assert abonnement_actif.statut == StatutAbonnement.SUSPENDU
        assert abonnement_actif.tokens.filter_by(actif=True).count() == 0


class TestAnnulation:

    def test_annulation_remet_la_sirene_en_stock(self, abonnement_actif, sirene):
        abonnements.annuler(abonnement_actif.id, "fermeture de l'école")

        assert abonnement_actif.statut == StatutAbonnement.ANNULE
        assert abonnement_actif.date_fin == horloge.aujourdhui()
        assert abonnement_actif.tokens.filter_by(actif=True).count() == 0
        assert sirene.statut == StatutSirene.EN_STOCK

    def test_annulation_directe_depuis_en_attente(self, sirene):
        abonnement = creer_abonnement(sirene)

        abonnements.annuler(abonnement.id)

        assert abonnement.statut == StatutAbonnement.ANNULE

    def test_sirene_en_panne_preservee(self, abonnement_actif, sirene):
        sirene.statut = StatutSirene.EN_PANNE
        db.session.commit()

        abonnements.annuler(abonnement_actif.id)

        assert sirene.statut == StatutSirene.EN_PANNE

    def test_etat_terminal(self, abonnement_actif):
        abonnements.annuler(abonnement_actif.id)

        with pytest.raises(ViolationInvariant):
            abonnements.annuler(abonnement_actif.id)
        with pytest.raises(ViolationInvariant):
            abonnements.activer(abonnement_actif.id)

    def test_recalcul_idempotent(self, abonnement_actif):
        assert abonnements._recalculer_statut_sirene(abonnement_actif) is False


class TestRenouvellement:
    """Chaîne de renouvellement."""

    def test_renouvellement_chaine(self, abonnement_actif):
        abonnements.annuler(abonnement_actif.id)

        nouveau = abonnements.renouveler(abonnement_actif.id)

        assert nouveau.date_debut == abonnement_actif.date_fin + timedelta(days=1)
        assert nouveau.date_fin == abonnements.plus_un_an(nouveau.date_debut)
        assert nouveau.parent_abonnement_id == abonnement_actif.id
        assert nouveau.statut == StatutAbonnement.EN_ATTENTE
        assert nouveau.sirene_id == abonnement_actif.sirene_id
        assert nouveau.montant == abonnement_actif.montant

    def test_renouvellement_actif_refuse(self, abonnement_actif):
        with pytest.raises(ViolationInvariant):
            abonnements.renouveler(abonnement_actif.id)

    def test_renouvellement_suspendu_refuse(self, abonnement_actif):
        abonnements.suspendre(abonnement_actif.id)

        with pytest.raises(ViolationInvariant):
            abonnements.renouveler(abonnement_actif.id)

    def test_renouvellement_en_attente_sans_parent_refuse(self, sirene):
        abonnement = creer_abonnement(sirene)

        with pytest.raises(ViolationInvariant):
            abonnements.renouveler(abonnement.id)

    def test_renouvellement_refuse_si_autre_vivant(self, abonnement_actif):
        abonnements.annuler(abonnement_actif.id)
        abonnements.renouveler(abonnement_actif.id)

        with pytest.raises(ViolationInvariant):
            abonnements.renouveler(abonnement_actif.id)

        assert _vivants(abonnement_actif.sirene_id) == 1


class TestTachesPeriodiques:

    def test_marquer_expires(self, abonnement_actif, sirene, fige_date):
        fige_date(abonnement_actif.date_fin + timedelta(days=1))
        assert abonnements.expires_non_traites() == [abonnement_actif]

        assert abonnements.marquer_expires() == 1
        assert abonnements.expires_non_traites() == []
        assert abonnement_actif.est_vivant is False
        assert abonnement_actif.statut == StatutAbonnement.EXPIRE
        assert sirene.statut == StatutSirene.EN_STOCK
        assert abonnement_actif.tokens.filter_by(actif=True).count() == 0
        assert abonnements.marquer_expires() == 0

    def test_auto_renouvellement_une_seule_fois(self, sirene, fige_date):
        abonnement = creer_abonnement_actif(sirene, auto_renouvellement=True)
        fige_date(abonnement.date_fin + timedelta(days=1))
        abonnements.marquer_expires()

        crees = abonnements.auto_renouveler()

        assert len(crees) == 1
        assert crees[0].parent_abonnement_id == abonnement.id
        assert abonnements.auto_renouveler() == []

    def test_auto_renouvellement_ignore_sans_option(self, abonnement_actif, fige_date):
        fige_date(abonnement_actif.date_fin + timedelta(days=1))
        abonnements.marquer_expires()

        assert abonnements.auto_renouveler() == []


class TestCalculs:

    def test_jours_restants(self, abonnement_actif, fige_date):
        fige_date(abonnement_actif.date_fin - timedelta(days=10))
        assert abonnements.jours_restants(abonnement_actif) == 10

        fige_date(abonnement_actif.date_fin + timedelta(days=3))
        assert abonnements.jours_restants(abonnement_actif) == 0

    def test_valide_jusqu_au_dernier_jour(self, abonnement_actif, fige_date):
        fige_date(abonnement_actif.date_fin)
        assert abonnements.est_valide(abonnement_actif) is True

        fige_date(abonnement_actif.date_fin + timedelta(days=1))
        assert abonnements.est_valide(abonnement_actif) is False

    def test_remise_renouvellement_anticipe(self, abonnement_actif, fige_date):
        fige_date(abonnement_actif.date_fin - timedelta(days=60))
        assert abonnements.prix_renouvellement(abonnement_actif) == Decimal('114000.00')

        fige_date(abonnement_actif.date_fin - timedelta(days=10))
        assert abonnements.prix_renouvellement(abonnement_actif) == Decimal('120000.00')

    def test_expirant_bientot(self, abonnement_actif, site, fige_date):
        autre = creer_sirene('SRN-0002', site)
        creer_abonnement_actif(autre, date_debut=date(2020, 1, 1), date_fin=date(2099, 1, 1))
        fige_date(abonnement_actif.date_fin - timedelta(days=5))

        assert abonnements.expirant_bientot(30) == [abonnement_actif]

    def test_statistiques(self, abonnement_actif, site):
        creer_abonnement(creer_sirene('SRN-0002', site))

        stats = abonnements.statistiques()

        assert stats['total'] == 2
        assert stats['par_statut'][StatutAbonnement.ACTIF] == 1
        assert stats['par_statut'][StatutAbonnement.EN_ATTENTE] == 1
        assert stats['revenus_mois'] == 120000.0


class TestSuppression:

    def test_suppression_logique_libere_la_sirene(self, sirene):
        abonnement = creer_abonnement(sirene)
        abonnements.annuler(abonnement.id)

        abonnements.supprimer(abonnement.id)

        assert abonnement.deleted_at is not None
        assert creer_abonnement(sirene).statut == StatutAbonnement.EN_ATTENTE

    def test_suppression_actif_refusee(self, abonnement_actif):
        with pytest.raises(ViolationInvariant):
            abonnements.supprimer(abonnement_actif.id)

    def test_aucun_token_actif_apres_suppression(self, abonnement_actif):
        abonnements.annuler(abonnement_actif.id)
        abonnements.supprimer(abonnement_actif.id)

        assert TokenSirene.query.filter_by(abonnement_id=abonnement_actif.id, actif=True).count() == 0
