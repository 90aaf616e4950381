"""
services - Cycles de vie métier (abonnements, tokens, programmations,
calendrier, paiements, maintenance)
"""
