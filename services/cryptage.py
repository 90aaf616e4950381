"""
services/cryptage.py - Cryptage symétrique partagé (tokens et programmations)

AES-128-ECB + PKCS7, sortie hexadécimale majuscule. Une somme de contrôle de
16 caractères (SHA-256 tronqué) est ajoutée au texte clair avant cryptage :
la sirène rejette une chaîne corrompue sans interpréter son contenu.
Déterministe : même texte + même clé => même chaîne.
"""

import hashlib

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from services.exceptions import ChaineCorrompue

TAILLE_CHECKSUM = 16


def _cle(secret):
    return hashlib.sha256(secret.encode('utf-8')).digest()[:16]


def checksum(texte):
    return hashlib.sha256(texte.encode('utf-8')).hexdigest()[:TAILLE_CHECKSUM].upper()


def hash_chaine(chaine):
    """Empreinte SHA-256 utilisée pour retrouver un token sans le décrypter"""
    return hashlib.sha256(chaine.encode('utf-8')).hexdigest()


def crypter(texte, secret):
    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    donnees = padder.update((texte + checksum(texte)).encode('utf-8')) + padder.finalize()

    encryptor = Cipher(algorithms.AES(_cle(secret)), modes.ECB()).encryptor()
    return (encryptor.update(donnees) + encryptor.finalize()).hex().upper()


def decrypter(chaine, secret):
    try:
        donnees = bytes.fromhex(chaine)
    except (TypeError, ValueError) as e:
        raise ChaineCorrompue("Chaîne cryptée illisible (hexadécimal attendu)") from e

    if not donnees or len(donnees) % 16:
        raise ChaineCorrompue("Longueur de chaîne cryptée invalide")

    decryptor = Cipher(algorithms.AES(_cle(secret)), modes.ECB()).decryptor()
    unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
    try:
        clair = decryptor.update(donnees) + decryptor.finalize()
        texte = (unpadder.update(clair) + unpadder.finalize()).decode('utf-8')
    except ValueError as e:
        # UnicodeDecodeError hérite de ValueError
        raise ChaineCorrompue("Clé invalide ou chaîne corrompue") from e

    contenu, somme = texte[:-TAILLE_CHECKSUM], texte[-TAILLE_CHECKSUM:]
    if len(texte) < TAILLE_CHECKSUM or checksum(contenu) != somme:
        raise ChaineCorrompue("Somme de contrôle invalide")
    return contenu
