"""
Tests du calendrier scolaire et des jours fériés.
"""

from datetime import date

import pytest

from conftest import creer_calendrier, creer_ecole
from models import JourFerie
from services import calendrier
from services.exceptions import ViolationInvariant

RENTREE = date(2025, 10, 1)
FIN_ANNEE = date(2026, 6, 30)


@pytest.fixture
def cal(app):
    return creer_calendrier(
        RENTREE, FIN_ANNEE,
        periodes_vacances=[{'nom': 'Noël', 'date_debut': '2025-12-22', 'date_fin': '2026-01-02'}],
        jours_feries_defaut=[{'intitule_journee': 'Fête du travail', 'date': '2026-05-01'}],
    )


class TestCreation:
    """Invariants de création."""

    def test_jours_feries_par_defaut(self, cal):
        jours = calendrier.jours_feries_calendrier(cal.id)

        assert [j.intitule_journee for j in jours] == ['Fête du travail']
        assert jours[0].est_national is True
        assert jours[0].ecole_id is None

    def test_calendrier_invalide(self, app):
        with pytest.raises(ViolationInvariant):
            creer_calendrier(FIN_ANNEE, RENTREE)

    def test_national_sans_ecole(self, cal, ecole):
        with pytest.raises(ViolationInvariant):
            calendrier.creer_jour_ferie({
                'calendrier_id': cal.id, 'intitule_journee': 'Fête', 'date': '2026-03-02',
                'est_national': True, 'ecole_id': ecole.id,
            })

    def test_date_hors_annee_scolaire(self, cal):
        with pytest.raises(ViolationInvariant):
            calendrier.creer_jour_ferie({
                'calendrier_id': cal.id, 'intitule_journee': 'Fête', 'date': '2026-08-15',
            })

    def test_doublon_refuse(self, cal):
        with pytest.raises(ViolationInvariant):
            calendrier.creer_jour_ferie({
                'calendrier_id': cal.id, 'intitule_journee': 'Doublon', 'date': '2026-05-01',
            })

    def test_meme_date_pour_une_ecole(self, cal, ecole):
        jour_ferie = calendrier.creer_jour_ferie({
            'calendrier_id': cal.id, 'intitule_journee': 'Fête du travail', 'date': '2026-05-01',
            'est_national': False, 'ecole_id': ecole.id,
        })

        assert jour_ferie.id is not None

    def test_bulk_tout_ou_rien(self, cal):
        with pytest.raises(ViolationInvariant):
            calendrier.creer_jours_feries_bulk(cal.id, [
                {'intitule_journee': 'Tabaski', 'date': '2026-05-27'},
                {'intitule_journee': 'Hors année', 'date': '2026-09-01'},
            ])

        assert JourFerie.query.count() == 1

    def test_bulk(self, cal):
        crees = calendrier.creer_jours_feries_bulk(cal.id, [
            {'intitule_journee': 'Tabaski', 'date': '2026-05-27'},
            {'intitule_journee': 'Indépendance', 'date': '2025-10-02', 'recurrent': True},
        ])

        assert len(crees) == 2
        assert JourFerie.query.count() == 3


class TestResolution:
    """est_jour_ferie : national, propre à l'école, récurrent."""

    def test_ferie_national(self, cal):
        assert calendrier.est_jour_ferie(date(2026, 5, 1)) is True
        assert calendrier.est_jour_ferie(date(2026, 5, 4)) is False

    def test_ferie_propre_a_l_ecole(self, cal, ecole):
        calendrier.creer_jour_ferie({
            'calendrier_id': cal.id, 'intitule_journee': 'Kermesse', 'date': '2026-03-02',
            'est_national': False, 'ecole_id': ecole.id,
        })
        autre = creer_ecole('ECO-002', 'École de Matam')

        assert calendrier.est_jour_ferie(date(2026, 3, 2), ecole.id) is True
        assert calendrier.est_jour_ferie(date(2026, 3, 2), autre.id) is False
        assert calendrier.est_jour_ferie(date(2026, 3, 2)) is False

    def test_ligne_ecole_inactive_supprime_le_national(self, cal, ecole):
        calendrier.creer_jour_ferie({
            'calendrier_id': cal.id, 'intitule_journee': 'Cours maintenus', 'date': '2026-05-01',
            'est_national': False, 'ecole_id': ecole.id, 'actif': False,
        })

        assert calendrier.est_jour_ferie(date(2026, 5, 1), ecole.id) is False
        assert calendrier.est_jour_ferie(date(2026, 5, 1)) is True

    def test_recurrent(self, cal):
        calendrier.creer_jour_ferie({
            'calendrier_id': cal.id, 'intitule_journee': 'Indépendance', 'date': '2025-10-02',
            'recurrent': True,
        })

        assert calendrier.est_jour_ferie(date(2027, 10, 2)) is True

    def test_ferie_d_un_autre_pays_ignore(self, cal, ecole):
        calendrier.creer_jour_ferie({
            'intitule_journee': 'Fête ivoirienne', 'date': '2026-03-03', 'pays_code': 'CI',
        })
        calendrier.creer_jour_ferie({
            'intitule_journee': 'Journée sans pays', 'date': '2026-03-05',
        })

        assert calendrier.est_jour_ferie(date(2026, 3, 3), ecole.id) is False
        assert calendrier.est_jour_ferie(date(2026, 3, 3), ecole.id, cal.id) is False
        assert calendrier.est_jour_ferie(date(2026, 3, 5), ecole.id) is True
        assert 'Fête ivoirienne' not in [j.intitule_journee for j in calendrier.calendrier_ecole(cal.id, ecole.id)]

    def test_calendrier_ecole(self, cal, ecole):
        calendrier.creer_jour_ferie({
            'calendrier_id': cal.id, 'intitule_journee': 'Cours maintenus', 'date': '2026-05-01',
            'est_national': False, 'ecole_id': ecole.id, 'actif': False,
        })
        calendrier.creer_jour_ferie({
            'calendrier_id': cal.id, 'intitule_journee': 'Kermesse', 'date': '2026-03-02',
            'est_national': False, 'ecole_id': ecole.id,
        })

        jours = calendrier.calendrier_ecole(cal.id, ecole.id)

        assert [j.intitule_journee for j in jours] == ['Kermesse']


class TestJoursEcole:

    def test_compter_jours_ecole(self, app):
        # Semaine du lundi 2 au dimanche 15 mars 2026 : 10 jours ouvrés
        cal = creer_calendrier(date(2026, 3, 2), date(2026, 3, 15))

        assert calendrier.compter_jours_ecole(cal.id) == 10

    def test_feries_et_vacances_exclus(self, app, ecole):
        cal = creer_calendrier(
            date(2026, 3, 2), date(2026, 3, 15),
            periodes_vacances=[{'nom': 'Pause', 'date_debut': '2026-03-09', 'date_fin': '2026-03-10'}],
            jours_feries_defaut=[{'intitule_journee': 'Fête', 'date': '2026-03-04'}],
        )
        calendrier.creer_jour_ferie({
            'calendrier_id': cal.id, 'intitule_journee': 'Kermesse', 'date': '2026-03-12',
            'est_national': False, 'ecole_id': ecole.id,
        })

        assert calendrier.compter_jours_ecole(cal.id) == 7
        assert calendrier.compter_jours_ecole(cal.id, ecole.id) == 6


class TestModification:

    def test_modifier_jour_ferie(self, cal):
        jour_ferie = calendrier.jours_feries_calendrier(cal.id)[0]

        calendrier.modifier_jour_ferie(jour_ferie.id, {'date': '2026-05-04', 'intitule_journee': 'Pont'})

        assert jour_ferie.date == date(2026, 5, 4)
        assert calendrier.est_jour_ferie(date(2026, 5, 1)) is False

    def test_filtres(self, cal, ecole):
        calendrier.creer_jour_ferie({
            'calendrier_id': cal.id, 'intitule_journee': 'Kermesse', 'date': '2026-03-02',
            'est_national': False, 'ecole_id': ecole.id,
        })

        assert len(calendrier.jours_feries_calendrier(cal.id, est_national=False)) == 1
        assert len(calendrier.jours_feries_calendrier(cal.id, debut=date(2026, 4, 1))) == 1
        assert len(calendrier.jours_feries_calendrier(cal.id, ecole_id=ecole.id)) == 1
