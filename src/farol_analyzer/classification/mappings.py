"""
Category mappings for contract classification.
Brazilian expense nature codes (natureza de despesa) and keyword tables.

Expense codes follow X.X.XX.XX.XX (categoria.grupo.modalidade.elemento.subelemento).
Elements used below: 30 material de consumo, 32 distribuição gratuita,
33 passagens, 35 consultoria, 36/39 serviços de terceiros (PF/PJ),
37 locação de mão-de-obra, 40 TIC, 51 obras e instalações, 52 equipamentos.
"""

import re
from functools import lru_cache
from typing import Dict, List, NamedTuple, Optional, Pattern, Tuple

from farol_analyzer.data.models import Confidence, ContractCategory
from farol_analyzer.data.preprocess import strip_accents


class ExpenseNatureMapping(NamedTuple):
    code: str
    description: str
    category: ContractCategory


EXPENSE_NATURE_MAPPINGS: List[ExpenseNatureMapping] = [
    # OBRAS
    ExpenseNatureMapping("4.4.90.51", "Obras e Instalações", ContractCategory.OBRAS),
    ExpenseNatureMapping("4.4.90.52", "Equipamentos e Material Permanente", ContractCategory.OBRAS),
    ExpenseNatureMapping("4.5.90.51", "Obras e Instalações - Inversões Financeiras", ContractCategory.OBRAS),
    # TI
    ExpenseNatureMapping("3.3.90.40", "Serviços de TIC - PJ", ContractCategory.TI),
    ExpenseNatureMapping("4.4.90.40", "Serviços de TIC - Capital", ContractCategory.TI),
    ExpenseNatureMapping("3.3.90.39.12", "Locação de Software", ContractCategory.TI),
    ExpenseNatureMapping("4.4.90.39.12", "Aquisição de Software", ContractCategory.TI),
    # SAUDE
    ExpenseNatureMapping("3.3.90.30.36", "Material Hospitalar", ContractCategory.SAUDE),
    ExpenseNatureMapping("3.3.90.32", "Material de Distribuição Gratuita (Saúde)", ContractCategory.SAUDE),
    ExpenseNatureMapping("3.3.90.39.50", "Serviços Médico-Hospitalares", ContractCategory.SAUDE),
    # EDUCACAO
    ExpenseNatureMapping("3.3.90.30.16", "Material de Expediente Escolar", ContractCategory.EDUCACAO),
    ExpenseNatureMapping("3.3.90.30.35", "Material Didático", ContractCategory.EDUCACAO),
    ExpenseNatureMapping("3.3.90.39.48", "Serviços de Seleção e Treinamento", ContractCategory.EDUCACAO),
    # SERVICOS
    ExpenseNatureMapping("3.3.90.35", "Serviços de Consultoria", ContractCategory.SERVICOS),
    ExpenseNatureMapping("3.3.90.36", "Outros Serviços de Terceiros - PF", ContractCategory.SERVICOS),
    ExpenseNatureMapping("3.3.90.37", "Locação de Mão-de-Obra", ContractCategory.SERVICOS),
    ExpenseNatureMapping("3.3.90.39", "Outros Serviços de Terceiros - PJ", ContractCategory.SERVICOS),
    ExpenseNatureMapping("3.3.90.33", "Passagens e Locomoção", ContractCategory.SERVICOS),
    ExpenseNatureMapping("3.3.90.34", "Outras Despesas de Pessoal", ContractCategory.SERVICOS),
]

# Keyword pass checks categories in this order and stops at the first match.
# Specific domains come before SERVICOS, which matches almost any service text.
KEYWORD_CATEGORY_ORDER: Tuple[ContractCategory, ...] = (
    ContractCategory.OBRAS,
    ContractCategory.TI,
    ContractCategory.SAUDE,
    ContractCategory.EDUCACAO,
    ContractCategory.SERVICOS,
)

CATEGORY_KEYWORDS: Dict[ContractCategory, List[str]] = {
    ContractCategory.OBRAS: [
        "obra", "obras", "construção", "construir", "edificação", "edificar",
        "reforma", "reformar", "ampliação", "ampliar", "restauração", "restaurar",
        "pavimentação", "pavimentar", "asfalto", "asfaltamento",
        "instalação", "instalações",
        "infraestrutura", "infra-estrutura", "saneamento", "drenagem",
        "ponte", "pontes", "viaduto", "viadutos", "passarela",
        "estrada", "estradas", "rodovia", "rodovias", "terraplanagem",
        "escavação", "fundação", "fundações", "alvenaria", "concreto",
        "estrutura metálica", "engenharia civil", "engenharia de construção",
        "empreitada", "empreiteira", "construtora", "canteiro de obras",
        "projeto executivo",
    ],
    ContractCategory.TI: [
        "software", "sistema", "sistemas", "aplicativo", "aplicação", "app",
        "licença", "licenciamento", "subscription", "saas", "desenvolvimento",
        "programação", "código",
        "hardware", "equipamento de informática", "equipamentos de ti",
        "computador", "computadores", "servidor", "servidores",
        "notebook", "notebooks", "desktop", "desktops", "impressora", "impressoras",
        "scanner", "scanners", "storage", "armazenamento", "backup",
        "rede", "redes", "network", "networking", "internet", "banda larga",
        "fibra óptica", "firewall", "segurança da informação", "cibersegurança",
        "data center", "datacenter", "cloud", "nuvem",
        "suporte técnico", "help desk", "helpdesk", "manutenção de ti",
        "manutenção de sistemas", "consultoria em ti", "consultoria de tecnologia",
        "migração de dados", "integração de sistemas",
        "tecnologia da informação", "informática", "ti", "tic", "t.i.", "t.i.c.",
    ],
    ContractCategory.SAUDE: [
        "medicamento", "medicamentos", "remédio", "remédios",
        "material hospitalar", "materiais hospitalares",
        "equipamento médico", "equipamentos médicos",
        "equipamento hospitalar", "equipamentos hospitalares",
        "insumo", "insumos", "material de saúde",
        "serviço médico", "serviços médicos", "serviço hospitalar", "serviços hospitalares",
        "atendimento médico", "consulta médica", "exame", "exames",
        "diagnóstico", "diagnósticos", "cirurgia", "cirurgias", "procedimento médico",
        "tratamento", "tratamentos", "terapia", "terapias",
        "hospital", "hospitais", "clínica", "clínicas", "ubs", "upa",
        "unidade de saúde", "pronto socorro", "pronto-socorro", "ps",
        "ambulatório", "ambulatórios",
        "médico", "médicos", "enfermeiro", "enfermeiros",
        "profissional de saúde", "profissionais de saúde",
        "saúde", "sanitário", "ambulância", "ambulâncias", "samu",
        "vacinação", "vacina", "vacinas", "imunização",
        "farmácia", "farmacêutico",
    ],
    ContractCategory.EDUCACAO: [
        "educação", "ensino", "aprendizagem", "capacitação", "treinamento",
        "formação", "curso", "cursos", "oficina", "oficinas", "workshop",
        "palestra", "palestras", "seminário", "seminários",
        "material didático", "material escolar", "livro", "livros",
        "apostila", "apostilas", "material pedagógico", "kit escolar",
        "escola", "escolas", "creche", "creches", "universidade", "faculdade",
        "instituição de ensino", "centro educacional", "núcleo educacional",
        "alfabetização", "letramento", "educação infantil", "ensino fundamental",
        "ensino médio", "educação especial", "educação inclusiva",
        "merenda", "merenda escolar", "alimentação escolar",
        "transporte escolar", "transporte de alunos",
        "professor", "professores", "docente", "docentes",
        "pedagogo", "pedagogos", "educador", "educadores",
    ],
    ContractCategory.SERVICOS: [
        "serviço", "serviços", "prestação de serviço", "prestação de serviços",
        "manutenção", "conservação", "limpeza", "higienização", "zeladoria",
        "vigilância", "segurança patrimonial",
        "consultoria", "assessoria", "auditoria", "advocacia", "jurídico",
        "contabilidade", "contábil", "engenharia", "arquitetura", "projeto",
        "locação", "aluguel", "transporte", "logística",
        "alimentação", "refeição", "catering", "coffee break", "buffet",
        "comunicação", "publicidade", "propaganda", "marketing", "mídia",
        "imprensa", "evento", "eventos", "cerimonial",
        "administrativo", "apoio administrativo", "recepção", "atendimento",
        "call center", "recursos humanos", "rh", "gestão de pessoas",
    ],
    ContractCategory.OUTROS: [],
}

# A category is skipped when one of these appears in the text
NEGATIVE_KEYWORDS: Dict[ContractCategory, List[str]] = {
    ContractCategory.OBRAS: [
        "manutenção de equipamentos",
        "manutenção predial",
        "serviços de limpeza",
        "vigilância",
    ],
    ContractCategory.TI: [
        "equipamento hospitalar",
        "equipamento médico",
        "sistema de saúde",
        "sistema educacional",
    ],
}


class KeywordMatch(NamedTuple):
    category: ContractCategory
    confidence: Confidence
    matched_keywords: List[str]


def _digits_only(code: str) -> str:
    return re.sub(r"[\s.]", "", code)


@lru_cache(maxsize=None)
def _keyword_pattern(keyword: str) -> Pattern:
    # Word boundaries that also work for keywords ending in "."
    return re.compile(r"(?<!\w)" + re.escape(strip_accents(keyword)) + r"(?!\w)")


def get_category_from_expense_code(code: Optional[str]) -> Optional[ExpenseNatureMapping]:
    """
    Look up an expense nature code.

    An exact match wins; otherwise the longest table code that prefixes the
    given code (a more specific sub-element of a known element). Dots and
    spaces are ignored.

    Args:
        code: Expense nature code such as "3.3.90.39.50"

    Returns:
        The matching mapping, or None
    """
    if not code or not code.strip():
        return None
    normalized = _digits_only(code)

    for mapping in EXPENSE_NATURE_MAPPINGS:
        if _digits_only(mapping.code) == normalized:
            return mapping

    prefixes = [m for m in EXPENSE_NATURE_MAPPINGS if normalized.startswith(_digits_only(m.code))]
    if not prefixes:
        return None
    return max(prefixes, key=lambda m: len(_digits_only(m.code)))


def confidence_for_matches(count: int) -> Confidence:
    if count >= 3:
        return Confidence.HIGH
    if count == 2:
        return Confidence.MEDIUM
    return Confidence.LOW


def get_category_from_keywords(text: str) -> Optional[KeywordMatch]:
    """
    Keyword classification of a contract object text.

    Categories are checked in KEYWORD_CATEGORY_ORDER; the first category with
    at least one keyword (and none of its negative keywords) wins. Matching is
    case and accent insensitive and respects word boundaries.

    Args:
        text: Contract object description

    Returns:
        KeywordMatch with up to five matched keywords, or None
    """
    if not text or not text.strip():
        return None
    normalized = strip_accents(text)

    for category in KEYWORD_CATEGORY_ORDER:
        negatives = NEGATIVE_KEYWORDS.get(category, [])
        if any(_keyword_pattern(kw).search(normalized) for kw in negatives):
            continue

        matches = [kw for kw in CATEGORY_KEYWORDS[category] if _keyword_pattern(kw).search(normalized)]
        if matches:
            return KeywordMatch(category, confidence_for_matches(len(matches)), matches[:5])

    return None
