"""
models.py - Modèles SQLAlchemy du parc de sirènes

Sirènes, abonnements, tokens, programmations, calendriers scolaires
et chaîne de maintenance (panne -> ordre de mission -> intervention -> rapport).
"""

from flask_sqlalchemy import SQLAlchemy
from flask_login import UserMixin
from datetime import datetime

db = SQLAlchemy()


# ==================== STATUTS ====================

class StatutSirene:
    EN_STOCK = 'en_stock'
    RESERVEE = 'reservee'
    INSTALLEE = 'installee'
    EN_PANNE = 'en_panne'


class StatutAbonnement:
    EN_ATTENTE = 'en_attente'
    ACTIF = 'actif'
    SUSPENDU = 'suspendu'
    EXPIRE = 'expire'
    ANNULE = 'annule'

    # Au plus un abonnement "vivant" par sirène
    VIVANTS = (ACTIF, EN_ATTENTE, SUSPENDU)
    TERMINAUX = (EXPIRE, ANNULE)


class StatutPaiement:
    EN_ATTENTE = 'en_attente'
    VALIDE = 'valide'
    ECHOUE = 'echoue'


class StatutPanne:
    EN_ATTENTE = 'en_attente'
    VALIDEE = 'validee'
    EN_COURS = 'en_cours'
    RESOLUE = 'resolue'
    CLOTUREE = 'cloturee'


class StatutOrdreMission:
    EN_ATTENTE = 'en_attente'
    EN_COURS = 'en_cours'
    TERMINE = 'termine'
    CLOTURE = 'cloture'

    FINIS = (TERMINE, CLOTURE)


class StatutCandidature:
    SOUMISE = 'soumise'
    ACCEPTEE = 'acceptee'
    REFUSEE = 'refusee'
    RETIREE = 'retiree'


class StatutIntervention:
    PLANIFIEE = 'planifiee'
    ASSIGNEE = 'assignee'
    ACCEPTEE = 'acceptee'
    EN_COURS = 'en_cours'
    TERMINEE = 'terminee'
    ANNULEE = 'annulee'

    OUVERTS = (PLANIFIEE, ASSIGNEE, ACCEPTEE, EN_COURS)


class StatutRapport:
    BROUILLON = 'brouillon'
    VALIDE = 'valide'
    REJETE = 'rejete'


# ==================== COMPTES ====================

class Ecole(db.Model):
    __tablename__ = 'ecoles'

    id = db.Column(db.Integer, primary_key=True)
    nom = db.Column(db.String(255), nullable=False)
    code = db.Column(db.String(20), unique=True, nullable=False)
    telephone = db.Column(db.String(50))
    email = db.Column(db.String(255))
    pays_code = db.Column(db.String(3), nullable=False, default='GN')
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    # Relations
    sites = db.relationship('Site', backref='ecole', lazy=True)


class Site(db.Model):
    __tablename__ = 'sites'

    id = db.Column(db.Integer, primary_key=True)
    ecole_id = db.Column(db.Integer, db.ForeignKey('ecoles.id'), nullable=False)
    nom = db.Column(db.String(255), nullable=False)
    adresse = db.Column(db.Text)
    est_principale = db.Column(db.Boolean, default=False, nullable=False)

    # Relations
    sirenes = db.relationship('Sirene', backref='site', lazy=True)


class Technicien(db.Model):
    __tablename__ = 'techniciens'

    id = db.Column(db.Integer, primary_key=True)
    nom = db.Column(db.String(255), nullable=False)
    telephone = db.Column(db.String(50))
    specialite = db.Column(db.String(100))
    disponible = db.Column(db.Boolean, default=True, nullable=False)


class Compte(UserMixin, db.Model):
    """Compte de connexion : école, technicien ou administrateur"""
    __tablename__ = 'comptes'

    TYPE_ECOLE = 'ecole'
    TYPE_TECHNICIEN = 'technicien'
    TYPE_ADMIN = 'admin'

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), unique=True, nullable=False)
    nom = db.Column(db.String(255), nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    type_compte = db.Column(db.String(20), nullable=False)
    ecole_id = db.Column(db.Integer, db.ForeignKey('ecoles.id'))
    technicien_id = db.Column(db.Integer, db.ForeignKey('techniciens.id'))
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    ecole = db.relationship('Ecole')
    technicien = db.relationship('Technicien')


# ==================== PARC DE SIRÈNES ====================

class Sirene(db.Model):
    __tablename__ = 'sirenes'
    __table_args__ = (
        # Le numéro de série reste réutilisable après suppression logique
        db.Index(
            'uq_sirene_numero_serie_vivante', 'numero_serie', unique=True,
            sqlite_where=db.text('deleted_at IS NULL'),
            postgresql_where=db.text('deleted_at IS NULL'),
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    numero_serie = db.Column(db.String(50), nullable=False)
    modele = db.Column(db.String(100))
    statut = db.Column(db.String(20), nullable=False, default=StatutSirene.EN_STOCK)
    old_statut = db.Column(db.String(20))
    site_id = db.Column(db.Integer, db.ForeignKey('sites.id'))
    date_installation = db.Column(db.Date)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    deleted_at = db.Column(db.DateTime)

    abonnements = db.relationship('Abonnement', backref='sirene', lazy='dynamic')


class Abonnement(db.Model):
    __tablename__ = 'abonnements'
    __table_args__ = (
        db.Index(
            'uq_abonnement_sirene_vivant', 'sirene_id', unique=True,
            sqlite_where=db.text(
                "statut IN ('actif', 'en_attente', 'suspendu') AND deleted_at IS NULL"
            ),
            postgresql_where=db.text(
                "statut IN ('actif', 'en_attente', 'suspendu') AND deleted_at IS NULL"
            ),
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    numero_abonnement = db.Column(db.String(30), unique=True, nullable=False)
    sirene_id = db.Column(db.Integer, db.ForeignKey('sirenes.id'), nullable=False)
    ecole_id = db.Column(db.Integer, db.ForeignKey('ecoles.id'), nullable=False)
    site_id = db.Column(db.Integer, db.ForeignKey('sites.id'), nullable=False)
    parent_abonnement_id = db.Column(db.Integer, db.ForeignKey('abonnements.id'))
    date_debut = db.Column(db.Date, nullable=False)
    date_fin = db.Column(db.Date, nullable=False)
    montant = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    statut = db.Column(db.String(20), nullable=False, default=StatutAbonnement.EN_ATTENTE)
    auto_renouvellement = db.Column(db.Boolean, default=False, nullable=False)
    notes = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    deleted_at = db.Column(db.DateTime)

    # Relations
    ecole = db.relationship('Ecole')
    site = db.relationship('Site')
    parent = db.relationship('Abonnement', remote_side=[id], backref='renouvellements')
    paiements = db.relationship('Paiement', backref='abonnement', lazy='dynamic')
    tokens = db.relationship('TokenSirene', backref='abonnement', lazy='dynamic')

    # ===== MÉTHODES UTILITAIRES =====

    @property
    def est_vivant(self):
        return self.statut in StatutAbonnement.VIVANTS

    def can_be_renewed(self):
        """EXPIRE, ANNULE, ou EN_ATTENTE issu lui-même d'un renouvellement"""
        if self.statut in (StatutAbonnement.ACTIF, StatutAbonnement.SUSPENDU):
            return False
        if self.statut == StatutAbonnement.EN_ATTENTE and self.parent_abonnement_id is None:
            return False
        return True

    def can_be_cancelled(self):
        return self.statut not in StatutAbonnement.TERMINAUX

    def has_paiement_valide(self):
        return self.paiements.filter_by(statut=StatutPaiement.VALIDE).first() is not None

    def ajouter_note(self, horodatage, texte):
        ligne = f"[{horodatage.strftime('%Y-%m-%d %H:%M:%S')}] {texte}"
        self.notes = f"{self.notes}\n{ligne}" if self.notes else ligne


class Paiement(db.Model):
    __tablename__ = 'paiements'

    id = db.Column(db.Integer, primary_key=True)
    abonnement_id = db.Column(db.Integer, db.ForeignKey('abonnements.id'), nullable=False)
    numero_transaction = db.Column(db.String(100), unique=True, nullable=False)
    montant = db.Column(db.Numeric(12, 2), nullable=False)
    moyen = db.Column(db.String(50), nullable=False, default='cinetpay')
    statut = db.Column(db.String(20), nullable=False, default=StatutPaiement.EN_ATTENTE)
    reference_externe = db.Column(db.String(100))
    metadonnees = db.Column(db.JSON, default=dict)
    date_paiement = db.Column(db.DateTime)
    date_validation = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)


class TokenSirene(db.Model):
    __tablename__ = 'tokens_sirene'
    __table_args__ = (
        db.Index(
            'uq_token_actif_abonnement', 'abonnement_id', unique=True,
            sqlite_where=db.text('actif = 1'),
            postgresql_where=db.text('actif'),
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    abonnement_id = db.Column(db.Integer, db.ForeignKey('abonnements.id'), nullable=False)
    sirene_id = db.Column(db.Integer, db.ForeignKey('sirenes.id'), nullable=False)
    site_id = db.Column(db.Integer, db.ForeignKey('sites.id'))
    token_crypte = db.Column(db.Text, nullable=False)
    token_hash = db.Column(db.String(64), nullable=False, index=True)
    date_debut = db.Column(db.Date, nullable=False)
    date_fin = db.Column(db.Date, nullable=False)
    date_generation = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    date_expiration = db.Column(db.Date, nullable=False)
    actif = db.Column(db.Boolean, default=True, nullable=False)

    sirene = db.relationship('Sirene')


# ==================== CALENDRIER SCOLAIRE ====================

class CalendrierScolaire(db.Model):
    __tablename__ = 'calendriers_scolaires'

    id = db.Column(db.Integer, primary_key=True)
    pays_code = db.Column(db.String(3), nullable=False)
    annee_scolaire = db.Column(db.String(9), nullable=False)
    description = db.Column(db.Text)
    date_rentree = db.Column(db.Date, nullable=False)
    date_fin_annee = db.Column(db.Date, nullable=False)
    # [{"nom": ..., "date_debut": "YYYY-MM-DD", "date_fin": "YYYY-MM-DD"}]
    periodes_vacances = db.Column(db.JSON, default=list)
    # [{"intitule_journee": ..., "date": "YYYY-MM-DD", "recurrent": bool}]
    jours_feries_defaut = db.Column(db.JSON, default=list)
    actif = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    jours_feries = db.relationship('JourFerie', backref='calendrier', lazy='dynamic')

    def couvre(self, jour):
        return self.date_rentree <= jour <= self.date_fin_annee


class JourFerie(db.Model):
    __tablename__ = 'jours_feries'
    __table_args__ = (
        db.UniqueConstraint('calendrier_id', 'date', 'ecole_id',
                            name='uq_jour_ferie_calendrier_date_ecole'),
    )

    id = db.Column(db.Integer, primary_key=True)
    calendrier_id = db.Column(db.Integer, db.ForeignKey('calendriers_scolaires.id'))
    ecole_id = db.Column(db.Integer, db.ForeignKey('ecoles.id'))
    pays_code = db.Column(db.String(3))
    intitule_journee = db.Column(db.String(255), nullable=False)
    date = db.Column(db.Date, nullable=False)
    recurrent = db.Column(db.Boolean, default=False, nullable=False)
    est_national = db.Column(db.Boolean, default=True, nullable=False)
    actif = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)


# ==================== PROGRAMMATIONS ====================

class Programmation(db.Model):
    __tablename__ = 'programmations'

    id = db.Column(db.Integer, primary_key=True)
    sirene_id = db.Column(db.Integer, db.ForeignKey('sirenes.id'), nullable=False)
    ecole_id = db.Column(db.Integer, db.ForeignKey('ecoles.id'), nullable=False)
    site_id = db.Column(db.Integer, db.ForeignKey('sites.id'), nullable=False)
    abonnement_id = db.Column(db.Integer, db.ForeignKey('abonnements.id'))
    calendrier_id = db.Column(db.Integer, db.ForeignKey('calendriers_scolaires.id'))
    nom_programmation = db.Column(db.String(255), nullable=False)
    # [{"heure", "minute", "jours", "duree_sonnerie", "description"}]
    horaires_sonneries = db.Column(db.JSON, nullable=False, default=list)
    jours_feries_inclus = db.Column(db.Boolean, default=False, nullable=False)
    # [{"date": "YYYY-MM-DD", "action": "include"|"exclude"}], triée par date
    jours_feries_exceptions = db.Column(db.JSON, default=list)
    date_debut = db.Column(db.Date, nullable=False)
    date_fin = db.Column(db.Date, nullable=False)
    actif = db.Column(db.Boolean, default=True, nullable=False)
    chaine_programmee = db.Column(db.Text)
    chaine_cryptee = db.Column(db.Text)
    cree_par = db.Column(db.Integer, db.ForeignKey('comptes.id'))
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    deleted_at = db.Column(db.DateTime)

    sirene = db.relationship('Sirene')
    abonnement = db.relationship('Abonnement')
    calendrier = db.relationship('CalendrierScolaire')

    @property
    def jours_semaine(self):
        """Union triée des jours de chaque horaire (0 = dimanche), jamais stockée"""
        jours = set()
        for horaire in self.horaires_sonneries or []:
            jours.update(horaire.get('jours', []))
        return sorted(jours)


# ==================== MAINTENANCE ====================

class Panne(db.Model):
    __tablename__ = 'pannes'

    id = db.Column(db.Integer, primary_key=True)
    numero_panne = db.Column(db.String(30), unique=True, nullable=False)
    sirene_id = db.Column(db.Integer, db.ForeignKey('sirenes.id'), nullable=False)
    ecole_id = db.Column(db.Integer, db.ForeignKey('ecoles.id'), nullable=False)
    site_id = db.Column(db.Integer, db.ForeignKey('sites.id'))
    description = db.Column(db.Text, nullable=False)
    priorite = db.Column(db.String(20), nullable=False, default='normale')
    statut = db.Column(db.String(20), nullable=False, default=StatutPanne.EN_ATTENTE)
    declare_par = db.Column(db.Integer, db.ForeignKey('comptes.id'))
    valide_par = db.Column(db.Integer, db.ForeignKey('comptes.id'))
    date_declaration = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    date_validation = db.Column(db.DateTime)
    date_cloture = db.Column(db.DateTime)

    sirene = db.relationship('Sirene')
    ordres_mission = db.relationship('OrdreMission', backref='panne', lazy=True)


class OrdreMission(db.Model):
    __tablename__ = 'ordres_mission'

    id = db.Column(db.Integer, primary_key=True)
    panne_id = db.Column(db.Integer, db.ForeignKey('pannes.id'), nullable=False)
    ecole_id = db.Column(db.Integer, db.ForeignKey('ecoles.id'), nullable=False)
    numero_ordre = db.Column(db.String(30), unique=True, nullable=False)
    statut = db.Column(db.String(20), nullable=False, default=StatutOrdreMission.EN_ATTENTE)
    nombre_techniciens_requis = db.Column(db.Integer, nullable=False, default=1)
    nombre_techniciens_acceptes = db.Column(db.Integer, nullable=False, default=0)
    candidature_cloturee = db.Column(db.Boolean, nullable=False, default=False)
    date_debut_candidature = db.Column(db.DateTime)
    date_fin_candidature = db.Column(db.DateTime)
    date_cloture_candidature = db.Column(db.DateTime)
    # Renseigné uniquement lors d'une clôture manuelle par un administrateur
    cloture_par = db.Column(db.Integer, db.ForeignKey('comptes.id'))
    valide_par = db.Column(db.Integer, db.ForeignKey('comptes.id'))
    date_generation = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    commentaire = db.Column(db.Text)

    candidatures = db.relationship('MissionTechnicien', backref='ordre_mission', lazy='dynamic')
    interventions = db.relationship('Intervention', backref='ordre_mission', lazy='dynamic')

    def peut_accepter_technicien(self):
        return self.nombre_techniciens_acceptes < self.nombre_techniciens_requis

    def candidature_ouverte(self, instant):
        if self.statut in StatutOrdreMission.FINIS:
            return False
        if self.candidature_cloturee or not self.peut_accepter_technicien():
            return False
        if self.date_debut_candidature and instant < self.date_debut_candidature:
            return False
        if self.date_fin_candidature and instant > self.date_fin_candidature:
            return False
        return True


class MissionTechnicien(db.Model):
    """Candidature d'un technicien à un ordre de mission"""
    __tablename__ = 'missions_techniciens'
    __table_args__ = (
        db.UniqueConstraint('ordre_mission_id', 'technicien_id',
                            name='uq_candidature_ordre_technicien'),
    )

    id = db.Column(db.Integer, primary_key=True)
    ordre_mission_id = db.Column(db.Integer, db.ForeignKey('ordres_mission.id'), nullable=False)
    technicien_id = db.Column(db.Integer, db.ForeignKey('techniciens.id'), nullable=False)
    statut_candidature = db.Column(db.String(20), nullable=False, default=StatutCandidature.SOUMISE)
    motivation = db.Column(db.Text)
    date_candidature = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    date_acceptation = db.Column(db.DateTime)
    date_refus = db.Column(db.DateTime)
    motif_retrait = db.Column(db.Text)
    date_retrait = db.Column(db.DateTime)
    is_suspended = db.Column(db.Boolean, default=False, nullable=False)
    motif_suspension = db.Column(db.Text)
    date_suspension = db.Column(db.DateTime)

    technicien = db.relationship('Technicien')


class Intervention(db.Model):
    __tablename__ = 'interventions'

    id = db.Column(db.Integer, primary_key=True)
    panne_id = db.Column(db.Integer, db.ForeignKey('pannes.id'), nullable=False)
    ordre_mission_id = db.Column(db.Integer, db.ForeignKey('ordres_mission.id'), nullable=False)
    technicien_id = db.Column(db.Integer, db.ForeignKey('techniciens.id'), nullable=False)
    statut = db.Column(db.String(20), nullable=False, default=StatutIntervention.ASSIGNEE)
    date_assignation = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    date_acceptation = db.Column(db.DateTime)
    date_debut = db.Column(db.DateTime)
    date_fin = db.Column(db.DateTime)
    observations = db.Column(db.Text)
    note_ecole = db.Column(db.Integer)
    commentaire_ecole = db.Column(db.Text)

    panne = db.relationship('Panne')
    technicien = db.relationship('Technicien')
    rapports = db.relationship('RapportIntervention', backref='intervention', lazy=True)


class RapportIntervention(db.Model):
    __tablename__ = 'rapports_intervention'

    id = db.Column(db.Integer, primary_key=True)
    intervention_id = db.Column(db.Integer, db.ForeignKey('interventions.id'), nullable=False)
    # NULL = rapport collectif de l'équipe
    technicien_id = db.Column(db.Integer, db.ForeignKey('techniciens.id'))
    rapport = db.Column(db.Text, nullable=False)
    diagnostic = db.Column(db.Text)
    travaux_effectues = db.Column(db.Text)
    pieces_utilisees = db.Column(db.Text)
    resultat = db.Column(db.String(20))
    recommandations = db.Column(db.Text)
    statut = db.Column(db.String(20), nullable=False, default=StatutRapport.BROUILLON)
    review_note = db.Column(db.Integer)
    review_admin = db.Column(db.Text)
    date_soumission = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    @property
    def est_collectif(self):
        return self.technicien_id is None


class Avis(db.Model):
    """Note (1-5) d'une école sur une intervention ou un ordre de mission"""
    __tablename__ = 'avis'
    __table_args__ = (
        db.CheckConstraint('note >= 1 AND note <= 5', name='ck_avis_note'),
    )

    id = db.Column(db.Integer, primary_key=True)
    ecole_id = db.Column(db.Integer, db.ForeignKey('ecoles.id'), nullable=False)
    intervention_id = db.Column(db.Integer, db.ForeignKey('interventions.id'))
    ordre_mission_id = db.Column(db.Integer, db.ForeignKey('ordres_mission.id'))
    note = db.Column(db.Integer, nullable=False)
    commentaire = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
