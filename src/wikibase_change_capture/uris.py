"""Wikibase URI helpers and ontology namespace normalisation.

Entity dumps served by older Wikibase deployments use a handful of historical
ontology namespaces. Downstream stores index only the canonical
``http://wikiba.se/ontology#`` form, so every term of a fetched snapshot is
passed through :meth:`WikibaseUris.normalize_term` before it leaves the
capture client. Foreign namespaces (``schema.org``, ``rdfs``, ...) are left
untouched.
"""

from __future__ import annotations

from typing import Optional, Tuple

from rdflib import Literal, URIRef
from rdflib.term import Node

CANONICAL_ONTOLOGY = "http://wikiba.se/ontology#"

DEPRECATED_ONTOLOGIES: Tuple[str, ...] = (
    "http://www.wikidata.org/ontology#",
    "http://www.wikidata.org/ontology-beta#",
    "http://www.wikidata.org/ontology-0.0.1#",
    "http://wikiba.se/ontology-beta#",
)


def normalize_uri(value: str) -> str:
    """Rewrite ``value`` onto the canonical ontology if it uses a deprecated one."""
    for prefix in DEPRECATED_ONTOLOGIES:
        if value.startswith(prefix):
            return CANONICAL_ONTOLOGY + value[len(prefix) :]
    return value


def uses_deprecated_ontology(value: str) -> bool:
    return any(value.startswith(prefix) for prefix in DEPRECATED_ONTOLOGIES)


class WikibaseUris:
    """URI roots for a single Wikibase host."""

    def __init__(self, host: str, *, scheme: str = "http") -> None:
        host = host.strip().rstrip("/")
        if not host:
            raise ValueError("host must not be empty")
        self._root = f"{scheme}://{host}"

    @property
    def root(self) -> str:
        return self._root

    def entity(self) -> str:
        return f"{self._root}/entity/"

    @staticmethod
    def ontology() -> str:
        return CANONICAL_ONTOLOGY

    def entity_uri(self, entity_id: str) -> URIRef:
        return URIRef(self.entity() + entity_id)

    def normalize_term(self, term: Node) -> Node:
        """Return ``term`` with any deprecated ontology namespace rewritten."""
        if isinstance(term, URIRef):
            normalized = normalize_uri(str(term))
            if normalized == str(term):
                return term
            return URIRef(normalized)
        if isinstance(term, Literal):
            datatype: Optional[URIRef] = term.datatype
            lexical = str(term)
            new_lexical = normalize_uri(lexical)
            new_datatype = (
                URIRef(normalize_uri(str(datatype))) if datatype is not None else None
            )
            if new_lexical == lexical and new_datatype == datatype:
                return term
            if new_datatype is not None:
                return Literal(new_lexical, datatype=new_datatype)
            return Literal(new_lexical, lang=term.language)
        return term
