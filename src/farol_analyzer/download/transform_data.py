"""
Normalizer for PNCP contract payloads.
Maps raw registry records (field names exactly as published by the registry)
to the canonical records in farol_analyzer.data.models. No I/O happens here.
"""

import re
from typing import Any, Dict, Iterable, List, NamedTuple, Optional

from farol_analyzer.data.models import (
    AgencyRecord,
    AmendmentRecord,
    ContractRecord,
    NormalizedContract,
    SupplierRecord,
)
from farol_analyzer.data.preprocess import (
    clean_text,
    normalize_cnpj,
    normalize_value,
    parse_date,
)

# valorGlobal is the primary value, the others are fallbacks in this order
VALUE_FIELDS = ["valorGlobal", "valorAcumulado", "valorInicial"]

EXPENSE_CODE_FIELDS = ["naturezaDespesa", "codigoNaturezaDespesa"]

# numeroControlePNCP, e.g. "44705055000172-2-000010/2024"
CONTROL_NUMBER_PATTERN = re.compile(r"^(\d{14})-\d+-(\d+)/(\d{4})$")

PORTAL_CONTRACT_URL = "https://pncp.gov.br/app/contratos"


class ControlNumber(NamedTuple):
    cnpj: str
    sequence: int
    year: int


def parse_control_number(control_number: Optional[str]) -> Optional[ControlNumber]:
    """
    Split a PNCP control number into agency tax id, sequence and year.

    Args:
        control_number: numeroControlePNCP value

    Returns:
        ControlNumber, or None if the value does not follow the pattern
    """
    if not isinstance(control_number, str):
        return None
    match = CONTROL_NUMBER_PATTERN.match(control_number.strip())
    if not match:
        return None
    return ControlNumber(match.group(1), int(match.group(2)), int(match.group(3)))


def build_contract_link(raw: Dict[str, Any]) -> Optional[str]:
    """
    Public portal link for a contract.

    Uses linkContrato when present, otherwise builds
    /app/contratos/{cnpj}/{year}/{sequence} from the control number.
    """
    link = raw.get("linkContrato")
    if link:
        return link

    control_number = raw.get("numeroControlePNCP")
    if not control_number:
        return None

    parsed = parse_control_number(control_number)
    if parsed is None:
        # Degraded form, still resolvable by the portal search
        return f"{PORTAL_CONTRACT_URL}/{control_number}"
    return f"{PORTAL_CONTRACT_URL}/{parsed.cnpj}/{parsed.year}/{parsed.sequence}"


def extract_modality(tipo_contrato: Any) -> Optional[str]:
    """tipoContrato arrives either as a plain string or as {"id": ..., "nome": ...}."""
    if not tipo_contrato:
        return None
    if isinstance(tipo_contrato, str):
        return tipo_contrato
    if isinstance(tipo_contrato, dict):
        return tipo_contrato.get("nome")
    return None


def select_value(raw: Dict[str, Any]) -> float:
    """First non-zero value among VALUE_FIELDS, else 0.0."""
    for field_name in VALUE_FIELDS:
        value = normalize_value(raw.get(field_name))
        if value:
            return value
    return 0.0


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _as_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def normalize_amendment(raw: Dict[str, Any], contract_id: str, position: int = 0) -> AmendmentRecord:
    """
    Map one registry history item to an AmendmentRecord.

    Args:
        raw: History item (sequencialHistorico, valorAcrescimo, ...)
        contract_id: External id of the owning contract
        position: Fallback sequence when the item carries none

    Returns:
        AmendmentRecord with increases and decreases kept as positive numbers
    """
    raw = _as_dict(raw)
    sequence = raw.get("sequencialHistorico", raw.get("sequencialTermoContrato"))
    try:
        sequence = int(sequence)
    except (TypeError, ValueError):
        sequence = position + 1

    def days(name: str) -> int:
        try:
            return abs(int(normalize_value(raw.get(name))))
        except (TypeError, ValueError, OverflowError):
            return 0

    return AmendmentRecord(
        contract_id=contract_id,
        sequence=sequence,
        type_name=_as_str(raw.get("tipoAlteracaoNome") or raw.get("tipoTermoContratoNome")),
        justification=_as_str(raw.get("justificativa")),
        value_increase=abs(normalize_value(raw.get("valorAcrescimo"))),
        value_decrease=abs(normalize_value(raw.get("valorReducao"))),
        duration_increase_days=days("prazoAcrescimoDias"),
        duration_decrease_days=days("prazoReducaoDias"),
        signature_date=parse_date(raw.get("dataAssinatura")),
        publication_date=parse_date(raw.get("dataPublicacaoPncp")),
    )


def normalize_amendments(items: Any, contract_id: str) -> List[AmendmentRecord]:
    if not isinstance(items, list):
        return []
    return [
        normalize_amendment(item, contract_id, position)
        for position, item in enumerate(items)
        if isinstance(item, dict)
    ]


def normalize_contract(raw: Dict[str, Any]) -> NormalizedContract:
    """
    Normalize a single contract from PNCP format to the internal format.

    Missing or malformed fields never raise: dates become None, values 0.0,
    nested structures are treated as empty.

    Args:
        raw: Contract record as returned by the registry

    Returns:
        NormalizedContract with agency, supplier and embedded amendments
    """
    raw = _as_dict(raw)
    orgao = _as_dict(raw.get("orgaoEntidade"))
    unidade = _as_dict(raw.get("unidadeOrgao"))

    external_id = _as_str(raw.get("numeroControlePNCP")) or ""

    agency_cnpj = normalize_cnpj(orgao.get("cnpj"))
    agency_code = _as_str(unidade.get("codigoUnidade")) or agency_cnpj
    agency = None
    if agency_code:
        agency = AgencyRecord(
            code=agency_code,
            name=_as_str(unidade.get("nomeUnidade")) or _as_str(orgao.get("razaoSocial")),
            cnpj=agency_cnpj,
            municipality_code=_as_str(unidade.get("codigoIbge") or unidade.get("codigoIBGE")),
        )

    supplier_cnpj = normalize_cnpj(raw.get("niFornecedor"))
    supplier = None
    if supplier_cnpj:
        supplier = SupplierRecord(
            cnpj=supplier_cnpj,
            name=_as_str(raw.get("nomeRazaoSocialFornecedor")),
        )

    expense_code = None
    for field_name in EXPENSE_CODE_FIELDS:
        expense_code = _as_str(raw.get(field_name))
        if expense_code:
            break

    contract = ContractRecord(
        external_id=external_id,
        number=_as_str(raw.get("numeroContratoEmpenho")),
        object=clean_text(raw.get("objetoContrato") or ""),
        value=select_value(raw),
        agency_code=agency_code,
        supplier_cnpj=supplier_cnpj,
        modality=extract_modality(raw.get("tipoContrato")),
        expense_code=expense_code,
        signature_date=parse_date(raw.get("dataAssinatura")),
        start_date=parse_date(raw.get("dataVigenciaInicio")),
        end_date=parse_date(raw.get("dataVigenciaFim")),
        publication_date=parse_date(raw.get("dataPublicacaoPncp")),
        pdf_url=build_contract_link(raw),
        raw_data=raw,
    )

    return NormalizedContract(
        contract=contract,
        agency=agency,
        supplier=supplier,
        amendments=normalize_amendments(raw.get("historico"), external_id),
    )


def normalize_contracts(raws: Iterable[Dict[str, Any]]) -> List[NormalizedContract]:
    """Normalize a list of raw records."""
    return [normalize_contract(raw) for raw in raws]
