"""
app.py - Application Flask (API des sirènes d'école)
"""

from flask import Flask, jsonify
from flask_login import LoginManager
from config import config
from models import db, Compte
from services.exceptions import ErreurMetier
import logging
import os
from dotenv import load_dotenv

load_dotenv()

login_manager = LoginManager()


@login_manager.user_loader
def load_user(user_id):
    """Charge un compte depuis la BD"""
    return db.session.get(Compte, int(user_id))


@login_manager.unauthorized_handler
def unauthorized():
    return jsonify({'success': False, 'message': 'Authentification requise'}), 401


def create_app(config_name=None):
    config_name = config_name or os.getenv('FLASK_CONFIG', 'default')

    app = Flask(__name__)
    app.config.from_object(config[config_name])

    # Initialiser la base de données
    db.init_app(app)

    # Initialiser Flask-Login
    login_manager.init_app(app)

    # ===== ENREGISTREMENT DES BLUEPRINTS =====

    from routes.auth import auth_bp
    app.register_blueprint(auth_bp, url_prefix='/auth')

    from routes.abonnements import abonnements_bp
    app.register_blueprint(abonnements_bp, url_prefix='/api/abonnements')

    from routes.paiements import paiements_bp
    app.register_blueprint(paiements_bp, url_prefix='/api/paiements')

    # Poll des sirènes + programmations
    from routes.sirenes import sirenes_bp
    app.register_blueprint(sirenes_bp, url_prefix='/api/sirenes')

    from routes.calendriers import calendriers_bp
    app.register_blueprint(calendriers_bp, url_prefix='/api')

    from routes.maintenance import maintenance_bp
    app.register_blueprint(maintenance_bp, url_prefix='/api')

    # ===== GESTION DES ERREURS =====

    @app.errorhandler(ErreurMetier)
    def erreur_metier(e):
        """Toute règle violée remonte avec son message, jamais une trace"""
        return jsonify(e.to_dict()), e.code_http

    @app.errorhandler(404)
    def not_found(e):
        return jsonify({'success': False, 'message': 'Ressource introuvable'}), 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return jsonify({'success': False, 'message': 'Méthode non autorisée'}), 405

    @app.errorhandler(500)
    def internal_error(e):
        db.session.rollback()
        return jsonify({'success': False, 'message': 'Erreur interne du serveur'}), 500

    # ===== LOGGING =====

    if not app.debug and not app.testing:
        from logging.handlers import RotatingFileHandler

        log_dir = app.config['LOG_DIR']
        if not os.path.exists(log_dir):
            os.mkdir(log_dir)

        file_handler = RotatingFileHandler(
            os.path.join(log_dir, app.config['LOG_FILE']), maxBytes=10240, backupCount=10
        )
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s %(levelname)s: %(message)s [in %(pathname)s:%(lineno)d]'
        ))
        file_handler.setLevel(logging.INFO)
        app.logger.addHandler(file_handler)
        # Les loggers des services (services.*, policies.*) remontent au root
        logging.getLogger().addHandler(file_handler)
        logging.getLogger().setLevel(logging.INFO)

        app.logger.setLevel(logging.INFO)
        app.logger.info('Sirènes startup')

    return app


# ===== DÉMARRAGE DE L'APPLICATION =====

if __name__ == '__main__':
    application = create_app('development')
    with application.app_context():
        db.create_all()
    application.run(
        host='0.0.0.0',
        port=5000,
        debug=True
    )
