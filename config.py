"""
Configuration file for Flask application
"""
import os
from dotenv import load_dotenv

# Charger les variables d'environnement depuis .env
load_dotenv()

class Config:
    """Base configuration"""
    # Application
    SECRET_KEY = os.getenv('SECRET_KEY', 'dev-secret-key-change-in-production')
    APP_URL = os.getenv('APP_URL', 'http://localhost:5000')

    # Database
    SQLALCHEMY_DATABASE_URI = os.getenv(
        'DATABASE_URL',
        'postgresql://localhost/sirenes'
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ECHO = False

    # Session
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = 'Lax'
    PERMANENT_SESSION_LIFETIME = 3600

    # Pagination
    ITEMS_PER_PAGE = int(os.getenv('ITEMS_PER_PAGE', 50))

    # Heure locale des écoles (comparaisons de dates d'abonnement)
    APP_TIMEZONE = os.getenv('APP_TIMEZONE', 'Africa/Conakry')

    # Sirènes : cryptage des tokens et des programmations
    SIRENE_CLE_CRYPTAGE = os.getenv('SIRENE_CLE_CRYPTAGE', 'dev-sirene-key-change-in-production')
    SIRENE_TOKEN_VERSION = int(os.getenv('SIRENE_TOKEN_VERSION', 1))
    SIRENE_TOKEN_HEADER = os.getenv('SIRENE_TOKEN_HEADER', 'X-Sirene-Token')
    PROGRAMMATION_VERSION = '01'

    # CinetPay
    CINETPAY_API_KEY = os.getenv('CINETPAY_API_KEY', '')
    CINETPAY_SITE_ID = os.getenv('CINETPAY_SITE_ID', '')
    CINETPAY_API_URL = os.getenv('CINETPAY_API_URL', 'https://api-checkout.cinetpay.com/v2/payment')
    CINETPAY_CHECK_URL = os.getenv('CINETPAY_CHECK_URL', 'https://api-checkout.cinetpay.com/v2/payment/check')
    CINETPAY_DEVISE = os.getenv('CINETPAY_DEVISE', 'XOF')
    CINETPAY_TIMEOUT = float(os.getenv('CINETPAY_TIMEOUT', 10))

    # Logs
    LOG_DIR = os.getenv('LOG_DIR', 'logs')
    LOG_FILE = os.getenv('LOG_FILE', 'sirenes.log')


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    TESTING = False
    SQLALCHEMY_ECHO = True  # Log SQL queries in dev


class TestingConfig(Config):
    """Testing configuration"""
    DEBUG = False
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    SIRENE_CLE_CRYPTAGE = 'cle-de-test'
    CINETPAY_API_KEY = 'test-api-key'
    CINETPAY_SITE_ID = '000000'


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    TESTING = False
    SESSION_COOKIE_SECURE = True

    # En production, on peut logger un warning si les vars ne sont pas set
    # mais on ne crash pas au moment de l'import
    if not os.getenv('DATABASE_URL'):
        print("WARNING: DATABASE_URL not set, using default")

    if not os.getenv('SIRENE_CLE_CRYPTAGE'):
        print("WARNING: SIRENE_CLE_CRYPTAGE not set, using default")


# Configuration par défaut selon l'environnement
config = {
    'development': DevelopmentConfig,
    'testing': TestingConfig,
    'production': ProductionConfig,
    'default': DevelopmentConfig
}
