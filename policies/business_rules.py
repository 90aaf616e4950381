"""
policies/business_rules.py - Règles métier (validations)

Invariants appliqués quel que soit l'appelant (route, script, tâche planifiée).
Chaque règle retourne (bool, liste d'erreurs).
"""

from datetime import date

from services.horloge import lire_date


def _est_entier(valeur):
    return isinstance(valeur, int) and not isinstance(valeur, bool)


class AbonnementRules:
    """Règles métier pour les abonnements"""

    @staticmethod
    def validate_create(data):
        """
        Valide la création d'un abonnement

        Returns:
            (bool, list): (Valide ?, Liste d'erreurs)
        """
        errors = []

        for champ in ('sirene_id', 'ecole_id', 'site_id'):
            if not data.get(champ):
                errors.append(f"Le champ {champ} est obligatoire")

        debut = fin = None
        try:
            debut = lire_date(data.get('date_debut'))
        except ValueError:
            errors.append("date_debut invalide (YYYY-MM-DD requis)")

        if data.get('date_fin') is not None:
            try:
                fin = lire_date(data['date_fin'])
            except ValueError:
                errors.append("date_fin invalide (YYYY-MM-DD requis)")

        if debut and fin and fin < debut:
            errors.append("date_fin doit être postérieure ou égale à date_debut")

        montant = data.get('montant', 0)
        try:
            if float(montant) < 0:
                errors.append("Le montant ne peut pas être négatif")
        except (TypeError, ValueError):
            errors.append("Montant invalide")

        return len(errors) == 0, errors


class ProgrammationRules:
    """Règles métier pour les programmations de sonneries"""

    HEURE_MAX = 23
    MINUTE_MAX = 59
    DUREE_MIN = 1
    DUREE_MAX = 30
    DESCRIPTION_MAX = 255
    ACTIONS = ('include', 'exclude')

    @staticmethod
    def signature_horaire(horaire):
        """HH:MM:jours-triés, clé de détection des doublons"""
        jours = ','.join(str(j) for j in sorted(horaire['jours']))
        return f"{horaire['heure']:02d}:{horaire['minute']:02d}:{jours}"

    @staticmethod
    def validate_horaires(horaires):
        errors = []

        if not isinstance(horaires, list) or not horaires:
            return False, ["Au moins un horaire de sonnerie est requis"]

        signatures = set()
        for index, horaire in enumerate(horaires, start=1):
            prefixe = f"Horaire #{index}"
            if not isinstance(horaire, dict):
                errors.append(f"{prefixe} : format invalide")
                continue

            heure = horaire.get('heure')
            minute = horaire.get('minute')
            if not _est_entier(heure) or not 0 <= heure <= ProgrammationRules.HEURE_MAX:
                errors.append(f"{prefixe} : l'heure doit être comprise entre 0 et 23")
            if not _est_entier(minute) or not 0 <= minute <= ProgrammationRules.MINUTE_MAX:
                errors.append(f"{prefixe} : la minute doit être comprise entre 0 et 59")

            jours = horaire.get('jours')
            if not isinstance(jours, list) or not jours:
                errors.append(f"{prefixe} : au moins un jour est requis")
                jours = None
            elif not all(_est_entier(j) and 0 <= j <= 6 for j in jours):
                errors.append(f"{prefixe} : les jours doivent être compris entre 0 (dimanche) et 6 (samedi)")
                jours = None
            elif len(set(jours)) != len(jours):
                errors.append(f"{prefixe} : jours en double")
                jours = None

            duree = horaire.get('duree_sonnerie', 3)
            if not _est_entier(duree) or not (
                    ProgrammationRules.DUREE_MIN <= duree <= ProgrammationRules.DUREE_MAX):
                errors.append(f"{prefixe} : la durée de sonnerie doit être comprise entre 1 et 30 secondes")

            description = horaire.get('description')
            if description is not None and (
                    not isinstance(description, str)
                    or len(description) > ProgrammationRules.DESCRIPTION_MAX):
                errors.append(f"{prefixe} : description trop longue (255 caractères max)")

            if jours and _est_entier(heure) and _est_entier(minute):
                signature = ProgrammationRules.signature_horaire(horaire)
                if signature in signatures:
                    errors.append(
                        f"{prefixe} : horaire en double {heure:02d}:{minute:02d} "
                        f"pour les jours {sorted(jours)}"
                    )
                signatures.add(signature)

        return len(errors) == 0, errors

    @staticmethod
    def validate_exceptions(exceptions):
        errors = []

        if exceptions is None:
            return True, errors
        if not isinstance(exceptions, list):
            return False, ["Les exceptions de jours fériés doivent être une liste"]

        dates_vues = set()
        for index, exception in enumerate(exceptions, start=1):
            prefixe = f"Exception #{index}"
            if not isinstance(exception, dict):
                errors.append(f"{prefixe} : format invalide")
                continue

            try:
                jour = lire_date(exception.get('date'))
            except ValueError:
                errors.append(f"{prefixe} : date invalide (YYYY-MM-DD requis)")
                continue

            if exception.get('action') not in ProgrammationRules.ACTIONS:
                errors.append(f"{prefixe} : action doit être 'include' ou 'exclude'")

            if jour in dates_vues:
                errors.append(f"{prefixe} : une seule exception par date ({jour.isoformat()})")
            dates_vues.add(jour)

        return len(errors) == 0, errors

    @staticmethod
    def validate_fenetre(date_debut, date_fin, abonnement=None):
        """[date_debut, date_fin] valide et contenue dans la période de l'abonnement"""
        errors = []

        if date_debut > date_fin:
            errors.append("date_debut doit être antérieure ou égale à date_fin")

        if abonnement is not None:
            if date_debut < abonnement.date_debut or date_fin > abonnement.date_fin:
                errors.append(
                    f"La période de programmation doit être comprise dans celle de "
                    f"l'abonnement ({abonnement.date_debut.isoformat()} au "
                    f"{abonnement.date_fin.isoformat()})"
                )

        return len(errors) == 0, errors

    @staticmethod
    def avertissements_calendrier(exceptions, calendrier):
        """
        Contrôle souple : exceptions hors de l'année scolaire du calendrier.

        Returns:
            list: avertissements (jamais bloquants)
        """
        if calendrier is None:
            return []

        avertissements = []
        for exception in exceptions or []:
            jour = lire_date(exception['date'])
            if not calendrier.couvre(jour):
                avertissements.append(
                    f"L'exception du {jour.isoformat()} est hors de l'année scolaire "
                    f"{calendrier.annee_scolaire}"
                )
        return avertissements


class JourFerieRules:
    """Règles métier pour les jours fériés"""

    @staticmethod
    def validate_create(data, calendrier=None):
        errors = []

        if not (data.get('intitule_journee') or '').strip():
            errors.append("L'intitulé du jour férié est obligatoire")

        jour = None
        try:
            jour = lire_date(data.get('date'))
        except ValueError:
            errors.append("Date invalide (YYYY-MM-DD requis)")

        if data.get('est_national', True) and data.get('ecole_id'):
            errors.append("Un jour férié national ne peut pas être rattaché à une école")

        if calendrier is not None and jour is not None and not calendrier.couvre(jour):
            errors.append(
                f"La date {jour.isoformat()} est hors de l'année scolaire "
                f"({calendrier.date_rentree.isoformat()} au {calendrier.date_fin_annee.isoformat()})"
            )

        return len(errors) == 0, errors


class CalendrierRules:
    """Règles métier pour les calendriers scolaires"""

    @staticmethod
    def validate_create(data):
        errors = []

        if not data.get('pays_code'):
            errors.append("Le code pays est obligatoire")
        if not data.get('annee_scolaire'):
            errors.append("L'année scolaire est obligatoire (ex: 2025-2026)")

        rentree = fin = None
        try:
            rentree = lire_date(data.get('date_rentree'))
            fin = lire_date(data.get('date_fin_annee'))
        except ValueError:
            errors.append("date_rentree et date_fin_annee sont obligatoires (YYYY-MM-DD)")

        if isinstance(rentree, date) and isinstance(fin, date) and rentree >= fin:
            errors.append("La date de rentrée doit précéder la fin d'année")

        for periode in data.get('periodes_vacances') or []:
            try:
                debut_vac = lire_date(periode.get('date_debut'))
                fin_vac = lire_date(periode.get('date_fin'))
            except (AttributeError, ValueError):
                errors.append("Période de vacances invalide (date_debut, date_fin requis)")
                continue
            if debut_vac > fin_vac:
                errors.append(f"Période de vacances '{periode.get('nom', '')}' : début après fin")

        return len(errors) == 0, errors


class MaintenanceRules:
    """Règles métier pour les avis et notes"""

    NOTE_MIN = 1
    NOTE_MAX = 5

    @staticmethod
    def validate_note(note):
        if not _est_entier(note) or not MaintenanceRules.NOTE_MIN <= note <= MaintenanceRules.NOTE_MAX:
            return False, ["La note doit être un entier entre 1 et 5"]
        return True, []
