"""Profession profiles: prompt terminology and contract requirements."""

from __future__ import annotations

import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProfessionProfile:
    key: str
    label: str
    contract_value_required: bool
    signed_date_required: bool
    prompt_context: str
    contract_term: str
    receivable_term: str
    expense_term: str


ARQUITETURA = ProfessionProfile(
    key="arquitetura",
    label="Arquitetura",
    contract_value_required=True,
    signed_date_required=True,
    prompt_context=(
        "O usuário é um escritório de arquitetura. Contratos são projetos de "
        "arquitetura com cliente, valor total e data de assinatura. Recebíveis "
        "são parcelas de honorários vinculadas a um projeto. Despesas são custos "
        "operacionais do escritório ou de obra."
    ),
    contract_term="projetos / contratos",
    receivable_term="parcelas de honorários a receber",
    expense_term="despesas do escritório",
)

MEDICINA = ProfessionProfile(
    key="medicina",
    label="Medicina",
    contract_value_required=False,
    signed_date_required=False,
    prompt_context=(
        "O usuário é um profissional de medicina. \"Contratos\" são PACIENTES em "
        "tratamento ou acompanhamento; valores podem ser por consulta e não há "
        "data de assinatura formal. Recebíveis são honorários de consultas e "
        "procedimentos. Despesas são custos do consultório ou clínica."
    ),
    contract_term="pacientes",
    receivable_term="honorários de consultas",
    expense_term="despesas do consultório",
)

GENERIC = ProfessionProfile(
    key="generic",
    label="Genérico",
    contract_value_required=False,
    signed_date_required=False,
    prompt_context="O usuário é um prestador de serviços que controla contratos, recebíveis e despesas.",
    contract_term="contratos",
    receivable_term="recebíveis",
    expense_term="despesas",
)

PROFESSIONS: dict[str, ProfessionProfile] = {
    p.key: p for p in (ARQUITETURA, MEDICINA, GENERIC)
}


def get_profession(key: str | None, *, default: str = "arquitetura") -> ProfessionProfile:
    name = (key or "").strip().lower() or default
    profile = PROFESSIONS.get(name)
    if profile is None:
        logger.warning("Unknown profession %r – using %r", name, default)
        profile = PROFESSIONS.get(default, ARQUITETURA)
    return profile
