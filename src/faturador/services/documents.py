from __future__ import annotations

import logging
from dataclasses import dataclass

from lxml import etree

from faturador.models.snapshot import parse_timestamp

logger = logging.getLogger(__name__)

# Municipal layouts (ABRASF and friends) and the national layout name the
# same data differently; tried in order, namespaces ignored.
_NUMBER_TAGS = ("nNFSe", "Numero", "NumeroNfse", "NumeroNFe")
_CHECK_CODE_TAGS = ("CodigoVerificacao", "cVerif", "CodigoVerificacaoNfse")
_ISSUED_AT_TAGS = ("DataEmissao", "dhProc", "DataEmissaoNfse", "dhEmi")
_CITY_CODE_TAGS = ("CodigoMunicipio", "cLocIncid", "cLocEmi")

_PARSER = etree.XMLParser(resolve_entities=False, no_network=True, remove_blank_text=True)


@dataclass(frozen=True)
class DocumentMetadata:
    number: str = ""
    check_code: str = ""
    issued_at: str = ""
    city_code: str = ""


def _first_text(root: etree._Element, tags: tuple[str, ...]) -> str:
    for tag in tags:
        found = root.xpath("//*[local-name()=$tag]", tag=tag)
        for node in found:
            text = (node.text or "").strip()
            if text:
                return text
    return ""


def parse_invoice_xml(content: bytes) -> DocumentMetadata:
    """Extract identification fields from an authorized NFS-e XML.

    Raises ValueError if *content* is not well-formed XML.
    """
    try:
        root = etree.fromstring(content, parser=_PARSER)
    except etree.XMLSyntaxError as exc:
        raise ValueError(f"XML da NFS-e inválido: {exc}") from exc

    issued_raw = _first_text(root, _ISSUED_AT_TAGS)
    issued = parse_timestamp(issued_raw)
    return DocumentMetadata(
        number=_first_text(root, _NUMBER_TAGS),
        check_code=_first_text(root, _CHECK_CODE_TAGS),
        issued_at=issued.isoformat() if issued else issued_raw,
        city_code=_first_text(root, _CITY_CODE_TAGS),
    )


def looks_like_pdf(content: bytes) -> bool:
    return content.startswith(b"%PDF")
