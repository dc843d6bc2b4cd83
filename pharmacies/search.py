# -*- coding: utf-8 -*-
"""
Medicine search helpers: accent-insensitive normalization, fuzzy matching
for misspelled queries and distance ordering of pharmacies.
"""
import logging
import unicodedata
from typing import Iterable, List, Optional, Tuple

from fuzzywuzzy import fuzz
from geopy.distance import geodesic

logger = logging.getLogger(__name__)

MIN_QUERY_LENGTH = 2


def normalize_name(name: str) -> str:
    """
    Normalise a medicine name for matching.

    Examples:
        "Paracétamol " -> "paracetamol"
        "NAPA  Extra"  -> "napa extra"
    """
    decomposed = unicodedata.normalize('NFKD', name or '')
    stripped = ''.join(char for char in decomposed if not unicodedata.combining(char))
    return ' '.join(stripped.lower().split())


def adaptive_similarity_threshold(word_length: int) -> int:
    """
    Similarity threshold (0-100) depending on the query length.

    A typo in a 4-letter word changes it far more than a typo in a 15-letter
    word, so short queries must match more strictly.
    """
    if word_length <= 4:
        return 90
    elif word_length <= 6:
        return 85
    elif word_length <= 10:
        return 80
    elif word_length <= 15:
        return 75
    else:
        return 70


def medicine_match_score(query: str, medicine) -> int:
    """Best similarity between the query and the medicine's name, generic name or brand."""
    normalized_query = normalize_name(query)
    if not normalized_query:
        return 0

    best = 0
    for candidate in (medicine.name, medicine.generic_name, medicine.brand):
        candidate = normalize_name(candidate)
        if not candidate:
            continue
        if normalized_query in candidate:
            return 100
        best = max(
            best,
            fuzz.partial_ratio(normalized_query, candidate),
            fuzz.token_sort_ratio(normalized_query, candidate),
        )
    return best


def match_medicines(query: str, medicines: Iterable, threshold: Optional[int] = None) -> List[Tuple[object, int]]:
    """
    Fuzzy-match a free-text query against medicines.

    Returns:
        List of (medicine, score) pairs at or above the threshold, best first.
    """
    if threshold is None:
        threshold = adaptive_similarity_threshold(len(normalize_name(query)))

    matches = []
    for medicine in medicines:
        score = medicine_match_score(query, medicine)
        if score >= threshold:
            matches.append((medicine, score))

    matches.sort(key=lambda pair: (-pair[1], pair[0].name))
    logger.debug(f"Fuzzy search '{query}' (threshold {threshold}): {len(matches)} match(es)")
    return matches


def parse_coordinates(lat, lon) -> Optional[Tuple[float, float]]:
    """Return a (lat, lon) tuple, or None when the parameters are missing or invalid."""
    if lat in (None, '') or lon in (None, ''):
        return None
    try:
        lat, lon = float(lat), float(lon)
    except (TypeError, ValueError):
        return None
    if not (-90 <= lat <= 90 and -180 <= lon <= 180):
        return None
    return lat, lon


def distance_km(origin: Tuple[float, float], pharmacy) -> Optional[float]:
    if pharmacy.latitude is None or pharmacy.longitude is None:
        return None
    return geodesic(origin, (float(pharmacy.latitude), float(pharmacy.longitude))).km


def sort_by_distance(pharmacies: Iterable, origin: Tuple[float, float]) -> list:
    """
    Annotate each pharmacy with `distance_km` and sort nearest first.
    Pharmacies without coordinates are dropped.
    """
    located = []
    for pharmacy in pharmacies:
        pharmacy.distance_km = distance_km(origin, pharmacy)
        if pharmacy.distance_km is not None:
            located.append(pharmacy)
    located.sort(key=lambda p: p.distance_km)
    return located
