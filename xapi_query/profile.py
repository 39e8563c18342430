"""
xAPI profile support.

A profile document (from the ADL profile server or a local file) names the
verbs a community of practice uses. ``query_for_profile`` turns one into a
StatementQuery subclass whose ``where`` accepts those verbs by short name:

    Cmi5 = query_for_profile("https://w3id.org/xapi/cmi5")
    Cmi5.with_verb("completed").group("actor.name").count()
"""

import logging
import re
from typing import Dict, Mapping, Optional, Type

import requests

from .config import configuration
from .errors import HttpError, StoreUnreachableError
from .query import StatementQuery, _querymethod

logger = logging.getLogger(__name__)

PROFILE_TIMEOUT = 30


def snake_case(label: str) -> str:
    """Turn a label into a name: "Launched Session" -> "launched_session"."""
    return re.sub(r"[^0-9a-z]+", "_", str(label).lower()).strip("_")


def _pref_label(node: Mapping) -> Optional[str]:
    labels = node.get("prefLabel") or {}
    return labels.get("en") if isinstance(labels, Mapping) else None


def extract_verbs(profile: Mapping) -> Dict[str, str]:
    """
    Verb name -> IRI for a profile document: Verb concepts first, then
    verbs used by statement templates that no concept already declared.
    """
    verbs: Dict[str, str] = {}
    for concept in profile.get("concepts") or []:
        if concept.get("type") != "Verb" or not concept.get("id"):
            continue
        name = snake_case(_pref_label(concept) or concept["id"].rstrip("/").rsplit("/", 1)[-1])
        verbs.setdefault(name, concept["id"])

    known = set(verbs.values())
    for template in profile.get("templates") or []:
        iri = template.get("verb")
        if not iri or iri in known:
            continue
        name = snake_case(_pref_label(template) or iri.rstrip("/").rsplit("/", 1)[-1])
        verbs.setdefault(name, iri)
        known.add(iri)
    return verbs


def fetch_profile(iri: str, server_url: Optional[str] = None, timeout: int = PROFILE_TIMEOUT) -> Dict:
    server_url = server_url or configuration().xapi_profile_server_url
    url = server_url.rstrip("/") + "/api/profile"
    logger.info(f"Fetching xAPI profile {iri} from {server_url}")
    try:
        resp = requests.get(url, params={"iri": iri}, headers={"Accept": "application/json"}, timeout=timeout)
    except requests.exceptions.RequestException as e:
        raise StoreUnreachableError(f"Profile server unreachable at {url}: {e}") from e
    if not resp.ok:
        raise HttpError(
            f"Unable to fetch xAPI profile {iri} ({resp.status_code})",
            status=resp.status_code,
            body=resp.text,
        )
    try:
        return resp.json()
    except ValueError as e:
        raise HttpError(f"Profile server returned a non-JSON body for {iri}", status=resp.status_code, body=resp.text) from e


class ProfileStatementQuery(StatementQuery):
    """StatementQuery whose verb conditions accept names from ``VERBS``."""

    PROFILE_NAME: str = ""

    def resolve_verb(self, verb):
        if isinstance(verb, str):
            return self.VERBS.get(verb, verb)
        return verb

    @_querymethod
    def with_verb(self, name: str) -> "ProfileStatementQuery":
        return self.where(verb=name)


def profile_query(name: str, verbs: Mapping[str, str]) -> Type[ProfileStatementQuery]:
    """Build a ProfileStatementQuery subclass, e.g. "cmi5 profile" -> Cmi5ProfileStatement."""
    class_name = "".join(part.capitalize() for part in snake_case(name).split("_")) + "Statement"
    return type(class_name, (ProfileStatementQuery,), {"VERBS": dict(verbs), "PROFILE_NAME": name})


def query_for_profile(iri: str, server_url: Optional[str] = None) -> Type[ProfileStatementQuery]:
    document = fetch_profile(iri, server_url=server_url)
    name = _pref_label(document) or iri
    verbs = extract_verbs(document)
    logger.info(f"Profile '{name}' declares {len(verbs)} verbs")
    return profile_query(name, verbs)
