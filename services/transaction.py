"""
services/transaction.py - Frontière transactionnelle des opérations métier

Toute transition de cycle de vie s'exécute dans un seul `with transaction(...)` :
commit si tout passe, rollback complet sinon.
"""

import logging
from contextlib import contextmanager

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from models import db
from services.exceptions import ErreurMetier, ConflitConcurrence, ErreurInfrastructure

logger = logging.getLogger(__name__)


def _format_contexte(contexte):
    return ' '.join(f"{cle}={valeur}" for cle, valeur in sorted(contexte.items()))


@contextmanager
def transaction(operation, **contexte):
    """
    Usage:
        with transaction('activer_abonnement', abonnement_id=42):
            ...
    """
    try:
        yield db.session
        db.session.commit()
    except ErreurMetier as e:
        db.session.rollback()
        logger.info("%s refusé (%s): %s", operation, _format_contexte(contexte), e.message)
        raise
    except IntegrityError as e:
        db.session.rollback()
        logger.warning("%s: conflit d'unicité (%s): %s",
                       operation, _format_contexte(contexte), e.orig)
        raise ConflitConcurrence(
            "Opération concurrente détectée, l'état a changé entre-temps. Réessayez."
        ) from e
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error("%s: erreur base de données (%s)", operation,
                     _format_contexte(contexte), exc_info=True)
        raise ErreurInfrastructure("Erreur interne lors de l'enregistrement") from e
    except Exception:
        db.session.rollback()
        raise
