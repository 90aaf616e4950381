"""
Tests de la chaîne de maintenance : panne, ordre de mission, candidatures,
interventions et rapports.
"""

from datetime import datetime, timedelta

import pytest

from conftest import creer_sirene, creer_technicien
from models import (
    Avis, StatutCandidature, StatutIntervention, StatutOrdreMission,
    StatutPanne, StatutRapport,
)
from services import maintenance
from services.exceptions import (
    PreconditionNonRemplie, RessourceIntrouvable, ViolationInvariant,
)


@pytest.fixture
def panne(sirene):
    return maintenance.declarer_panne(sirene.id, {'description': "La sirène ne sonne plus"})


@pytest.fixture
def ordre(panne):
    _, ordre = maintenance.valider_panne(panne.id, None, {'nombre_techniciens_requis': 2})
    return ordre


@pytest.fixture
def techniciens(app):
    return [creer_technicien(f"Technicien {i}") for i in range(3)]


def _accepter(ordre, technicien):
    candidature = maintenance.soumettre_candidature(ordre.id, technicien.id)
    return maintenance.accepter_candidature(candidature.id)


def _terminer(intervention):
    maintenance.demarrer_intervention(intervention.id)
    return maintenance.rediger_rapport(intervention.id, {'rapport': "Haut-parleur remplacé"})


class TestPanne:

    def test_declaration(self, panne, sirene):
        assert panne.statut == StatutPanne.EN_ATTENTE
        assert panne.numero_panne.startswith('PAN-')
        assert panne.ecole_id == sirene.site.ecole_id

    def test_description_obligatoire(self, sirene):
        with pytest.raises(ViolationInvariant):
            maintenance.declarer_panne(sirene.id, {'description': '  '})

    def test_sirene_sans_site(self, app):
        sirene = creer_sirene('SRN-STOCK')

        with pytest.raises(PreconditionNonRemplie):
            maintenance.declarer_panne(sirene.id, {'description': "Panne"})

    def test_validation_cree_un_ordre(self, panne, ordre):
        assert panne.statut == StatutPanne.VALIDEE
        assert ordre.statut == StatutOrdreMission.EN_ATTENTE
        assert ordre.nombre_techniciens_requis == 2
        assert ordre.numero_ordre.startswith('OM-')

    def test_double_validation_refusee(self, panne, ordre):
        with pytest.raises(ViolationInvariant):
            maintenance.valider_panne(panne.id, None)

    def test_quota_invalide(self, panne):
        with pytest.raises(ViolationInvariant):
            maintenance.valider_panne(panne.id, None, {'nombre_techniciens_requis': 0})

    def test_cloture_prematuree_refusee(self, panne, ordre):
        with pytest.raises(ViolationInvariant):
            maintenance.cloturer_panne(panne.id)


class TestCandidatures:
    """Quota, clôture automatique et réouverture."""

    def test_premiere_acceptation(self, ordre, panne, techniciens):
        candidature, intervention = _accepter(ordre, techniciens[0])

        assert candidature.statut_candidature == StatutCandidature.ACCEPTEE
        assert intervention.statut == StatutIntervention.ASSIGNEE
        assert ordre.statut == StatutOrdreMission.EN_COURS
        assert ordre.nombre_techniciens_acceptes == 1
        assert ordre.candidature_cloturee is False
        assert panne.statut == StatutPanne.EN_COURS

    def test_quota_atteint_cloture(self, ordre, techniciens):
        _accepter(ordre, techniciens[0])
        _accepter(ordre, techniciens[1])

        assert ordre.candidature_cloturee is True
        assert ordre.cloture_par is None
        with pytest.raises(PreconditionNonRemplie):
            maintenance.soumettre_candidature(ordre.id, techniciens[2].id)

    def test_acceptation_au_dela_du_quota(self, ordre, techniciens):
        candidatures = [maintenance.soumettre_candidature(ordre.id, t.id) for t in techniciens]
        maintenance.accepter_candidature(candidatures[0].id)
        maintenance.accepter_candidature(candidatures[1].id)

        with pytest.raises(PreconditionNonRemplie):
            maintenance.accepter_candidature(candidatures[2].id)

        assert ordre.nombre_techniciens_acceptes == 2

    def test_candidature_unique(self, ordre, techniciens):
        maintenance.soumettre_candidature(ordre.id, techniciens[0].id)

        with pytest.raises(ViolationInvariant):
            maintenance.soumettre_candidature(ordre.id, techniciens[0].id)

    def test_fenetre_de_candidature(self, panne, techniciens):
        debut = datetime.utcnow() + timedelta(days=2)
        _, ordre = maintenance.valider_panne(panne.id, None, {
            'date_debut_candidature': debut.isoformat(),
        })

        with pytest.raises(PreconditionNonRemplie):
            maintenance.soumettre_candidature(ordre.id, techniciens[0].id)

    def test_retrait_reouvre_si_cloture_automatique(self, ordre, techniciens):
        _, intervention = _accepter(ordre, techniciens[0])
        _accepter(ordre, techniciens[1])
        _terminer(intervention)

        _, ordre_maj = maintenance.retirer_mission_technicien(intervention.id, "Travail à reprendre")

        assert ordre_maj.nombre_techniciens_acceptes == 1
        assert ordre_maj.candidature_cloturee is False
        assert intervention.statut == StatutIntervention.ANNULEE

    def test_resolution_avant_quota_clot_les_candidatures(self, ordre, panne, techniciens):
        _, intervention = _accepter(ordre, techniciens[0])
        en_attente = maintenance.soumettre_candidature(ordre.id, techniciens[1].id)
        _terminer(intervention)

        assert panne.statut == StatutPanne.RESOLUE
        assert ordre.candidature_cloturee is True
        with pytest.raises(PreconditionNonRemplie):
            maintenance.soumettre_candidature(ordre.id, techniciens[2].id)
        with pytest.raises(PreconditionNonRemplie):
            maintenance.accepter_candidature(en_attente.id)

    def test_panne_cloturee_refuse_les_candidatures(self, ordre, panne, techniciens):
        _, intervention = _accepter(ordre, techniciens[0])
        en_attente = maintenance.soumettre_candidature(ordre.id, techniciens[1].id)
        _terminer(intervention)
        maintenance.cloturer_panne(panne.id)
        with pytest.raises(PreconditionNonRemplie):
            maintenance.rouvrir_candidatures(ordre.id)

        assert ordre.candidature_ouverte(datetime.utcnow()) is False
        with pytest.raises(PreconditionNonRemplie):
            maintenance.soumettre_candidature(ordre.id, techniciens[2].id)
        with pytest.raises(PreconditionNonRemplie):
            maintenance.accepter_candidature(en_attente.id)
        assert ordre.interventions.count() == 1

    def test_retrait_apres_resolution_relance_l_ordre(self, ordre, panne, techniciens):
        _, premiere = _accepter(ordre, techniciens[0])
        _, seconde = _accepter(ordre, techniciens[1])
        _terminer(premiere)
        _terminer(seconde)
        assert ordre.statut == StatutOrdreMission.TERMINE

        maintenance.retirer_mission_technicien(seconde.id, "Travail à reprendre")

        assert ordre.candidature_cloturee is False
        assert ordre.statut == StatutOrdreMission.EN_COURS
        assert panne.statut == StatutPanne.EN_COURS
        _, remplacante = _accepter(ordre, techniciens[2])
        assert remplacante.statut == StatutIntervention.ASSIGNEE

    def test_retrait_ne_reouvre_pas_si_cloture_manuelle(self, ordre, techniciens, compte_admin):
        _, intervention = _accepter(ordre, techniciens[0])
        maintenance.cloturer_candidatures(ordre.id, compte_admin.id)
        _terminer(intervention)

        _, ordre_maj = maintenance.retirer_mission_technicien(intervention.id, "Erreur")

        assert ordre_maj.nombre_techniciens_acceptes == 0
        assert ordre_maj.candidature_cloturee is True

    def test_retrait_intervention_non_terminee(self, ordre, techniciens):
        _, intervention = _accepter(ordre, techniciens[0])

        with pytest.raises(PreconditionNonRemplie):
            maintenance.retirer_mission_technicien(intervention.id, "Trop tôt")

    def test_rouvrir_candidatures(self, ordre, techniciens, compte_admin):
        maintenance.cloturer_candidatures(ordre.id, compte_admin.id)
        maintenance.rouvrir_candidatures(ordre.id)

        assert ordre.candidature_cloturee is False
        assert maintenance.soumettre_candidature(ordre.id, techniciens[0].id).id is not None

    def test_refus_et_retrait(self, ordre, techniciens):
        premiere = maintenance.soumettre_candidature(ordre.id, techniciens[0].id)
        seconde = maintenance.soumettre_candidature(ordre.id, techniciens[1].id)

        maintenance.refuser_candidature(premiere.id)
        maintenance.retirer_candidature(seconde.id, techniciens[1].id, "Indisponible")

        assert premiere.statut_candidature == StatutCandidature.REFUSEE
        assert seconde.statut_candidature == StatutCandidature.RETIREE
        with pytest.raises(ViolationInvariant):
            maintenance.accepter_candidature(premiere.id)

    def test_retrait_par_un_autre_technicien(self, ordre, techniciens):
        candidature = maintenance.soumettre_candidature(ordre.id, techniciens[0].id)

        with pytest.raises(RessourceIntrouvable):
            maintenance.retirer_candidature(candidature.id, techniciens[1].id, "?")

    def test_suspendre_intervenant(self, ordre, techniciens):
        candidature, _ = _accepter(ordre, techniciens[0])

        maintenance.suspendre_intervenant(candidature.id, "Retards répétés")

        assert candidature.is_suspended is True
        with pytest.raises(ViolationInvariant):
            maintenance.suspendre_intervenant(candidature.id, "Encore")


class TestInterventions:

    def test_acceptation_par_le_technicien(self, ordre, techniciens):
        _, intervention = _accepter(ordre, techniciens[0])

        maintenance.accepter_intervention(intervention.id, techniciens[0].id)

        assert intervention.statut == StatutIntervention.ACCEPTEE
        with pytest.raises(RessourceIntrouvable):
            maintenance.accepter_intervention(intervention.id, techniciens[1].id)

    def test_resolution_quand_tout_est_termine(self, ordre, panne, techniciens):
        _, premiere = _accepter(ordre, techniciens[0])
        _, seconde = _accepter(ordre, techniciens[1])

        _terminer(premiere)
        assert panne.statut == StatutPanne.EN_COURS

        _terminer(seconde)
        assert panne.statut == StatutPanne.RESOLUE
        assert ordre.statut == StatutOrdreMission.TERMINE

        maintenance.cloturer_panne(panne.id)
        assert panne.statut == StatutPanne.CLOTUREE
        assert ordre.statut == StatutOrdreMission.CLOTURE

    def test_rapport_obligatoire(self, ordre, techniciens):
        _, intervention = _accepter(ordre, techniciens[0])

        with pytest.raises(ViolationInvariant):
            maintenance.rediger_rapport(intervention.id, {'rapport': ''})

        assert intervention.statut == StatutIntervention.ASSIGNEE


class TestRapportsEtAvis:

    def test_rapport_collectif(self, ordre, techniciens):
        _, intervention = _accepter(ordre, techniciens[0])

        rapport = maintenance.rediger_rapport(intervention.id, {'rapport': "Équipe"}, collectif=True)

        assert rapport.est_collectif is True
        assert rapport.statut == StatutRapport.BROUILLON

    def test_evaluation(self, ordre, techniciens):
        _, intervention = _accepter(ordre, techniciens[0])
        rapport = _terminer(intervention)

        maintenance.evaluer_rapport(rapport.id, True, note=4, commentaire="Bon travail")

        assert rapport.statut == StatutRapport.VALIDE
        assert rapport.review_note == 4
        with pytest.raises(ViolationInvariant):
            maintenance.evaluer_rapport(rapport.id, False)

    def test_rejet(self, ordre, techniciens):
        _, intervention = _accepter(ordre, techniciens[0])
        rapport = _terminer(intervention)

        maintenance.evaluer_rapport(rapport.id, False)

        assert rapport.statut == StatutRapport.REJETE

    @pytest.mark.parametrize('note', [0, 6, '4', None])
    def test_note_invalide(self, ordre, techniciens, panne, note):
        _, intervention = _accepter(ordre, techniciens[0])
        _terminer(intervention)

        with pytest.raises(ViolationInvariant):
            maintenance.noter_intervention(intervention.id, panne.ecole_id, note)

    def test_noter_intervention(self, ordre, techniciens, panne):
        _, intervention = _accepter(ordre, techniciens[0])
        _terminer(intervention)

        avis = maintenance.noter_intervention(intervention.id, panne.ecole_id, 5, "Rapide")

        assert intervention.note_ecole == 5
        assert avis.note == 5
        assert Avis.query.count() == 1

    def test_noter_intervention_autre_ecole(self, ordre, techniciens, panne):
        _, intervention = _accepter(ordre, techniciens[0])
        _terminer(intervention)

        with pytest.raises(RessourceIntrouvable):
            maintenance.noter_intervention(intervention.id, panne.ecole_id + 1, 5)

    def test_noter_ordre_mission(self, ordre, techniciens, panne):
        with pytest.raises(PreconditionNonRemplie):
            maintenance.noter_ordre_mission(ordre.id, panne.ecole_id, 3)

        _, intervention = _accepter(ordre, techniciens[0])
        _terminer(intervention)

        avis = maintenance.noter_ordre_mission(ordre.id, panne.ecole_id, 3)

        assert avis.ordre_mission_id == ordre.id
