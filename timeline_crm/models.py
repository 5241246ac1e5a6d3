"""Typed records for the Supabase tables, parsed at the client boundary."""
from datetime import date, datetime
from enum import Enum
from typing import List, Optional

from flask_login import UserMixin
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from timeline_crm.errors import MalformedRecordError

# Fixed id of the sistema_config singleton row
SISTEMA_CONFIG_ID = '00000000-0000-0000-0000-000000000000'

BUCKET_ARQUIVOS = 'arquivos'
BUCKET_SISTEMA = 'sistema'
BUCKET_LINKS = 'links'


class UserRole(str, Enum):
    ADMIN = 'admin'
    CLIENTE = 'cliente'


class FaseNome(str, Enum):
    DIAGNOSTICO = 'diagnostico'
    POSICIONAMENTO = 'posicionamento'
    TRACAO = 'tracao'


class StatusEtapa(str, Enum):
    PENDENTE = 'pendente'
    EM_ANDAMENTO = 'em_andamento'
    CONCLUIDO = 'concluido'


class TipoArquivo(str, Enum):
    PDF = 'pdf'
    DOC = 'doc'
    DOCX = 'docx'
    XLSX = 'xlsx'
    CSV = 'csv'
    LINK = 'link'


# Position of each status in the normal flow
STATUS_ORDER = {
    StatusEtapa.PENDENTE: 0,
    StatusEtapa.EM_ANDAMENTO: 1,
    StatusEtapa.CONCLUIDO: 2,
}

FASE_ORDEM = {
    FaseNome.DIAGNOSTICO: 1,
    FaseNome.POSICIONAMENTO: 2,
    FaseNome.TRACAO: 3,
}

FASE_INFO = {
    FaseNome.DIAGNOSTICO: {'nome': 'Diagnóstico', 'descricao': 'Análise completa da situação atual'},
    FaseNome.POSICIONAMENTO: {'nome': 'Posicionamento', 'descricao': 'Estratégia e planejamento'},
    FaseNome.TRACAO: {'nome': 'Tração', 'descricao': 'Execução e resultados'},
}

ETAPAS_POR_FASE = {
    FaseNome.DIAGNOSTICO: [
        'Análise da situação atual',
        'Análise de mercado',
        'Diagnóstico do processo comercial',
        'Mapeamento da jornada do cliente',
        'Avaliação de canais ativos e funil atual',
        'Persona',
        'Matriz SWOT',
        'Benchmark com concorrentes',
    ],
    FaseNome.POSICIONAMENTO: [
        'Proposta de valor',
        'Visão de futuro',
        'Plano de ação',
        'Criação de linha editorial',
        'Posicionamento',
    ],
    FaseNome.TRACAO: [
        'Tráfego e Comercial - Construção do funil',
        'Tráfego e Comercial - Planejamento de campanha',
        'Gestor de tráfego - Anúncios com foco em performance',
        'Comercial - Implantação ou reestruturação de CRM',
        'Comercial - Script de prospecção',
        'Comercial - Estruturação de pitch comercial por persona',
        'Comercial - Diretrizes de argumentação de vendas',
        'Comercial - Treinamento de time comercial',
        'Comercial - CRM (trabalho de base/conversão)',
        'Comercial - Pesquisa com clientes',
    ],
}

TOTAL_ETAPAS = sum(len(etapas) for etapas in ETAPAS_POR_FASE.values())


class Record(BaseModel):
    # Rows carry joined/extra columns we do not model
    model_config = ConfigDict(extra='ignore', use_enum_values=False)

    def to_row(self, **kwargs):
        """JSON-safe dict ready to be sent back to PostgREST."""
        return self.model_dump(mode='json', **kwargs)


class User(UserMixin, Record):
    id: str
    email: str
    nome: str
    role: UserRole
    telefone: Optional[str] = None
    cliente_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_admin(self):
        return self.role == UserRole.ADMIN

    @property
    def home_route(self):
        return '/admin/dashboard' if self.is_admin else '/cliente/projetos'


class Cliente(Record):
    id: str
    nome: str
    email: str
    telefone: Optional[str] = None
    empresa: Optional[str] = None
    ativo: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Projeto(Record):
    id: str
    cliente_id: str
    nome: str
    descricao: Optional[str] = None
    data_inicio: date
    data_fim_prevista: Optional[date] = None
    ativo: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    cliente: Optional[Cliente] = None


class Fase(Record):
    id: str
    nome: FaseNome
    ordem: int


class Etapa(Record):
    id: str
    fase_id: str
    nome: str
    descricao: Optional[str] = None
    ordem: int
    fase: Optional[Fase] = None


class Arquivo(Record):
    id: str
    projeto_timeline_id: str
    nome: str
    tipo: TipoArquivo
    tamanho: Optional[int] = None
    storage_path: Optional[str] = None
    storage_url: Optional[str] = None
    bucket_name: Optional[str] = None
    uploaded_by: str
    created_at: Optional[datetime] = None

    @model_validator(mode='after')
    def check_storage_path(self):
        if self.tipo == TipoArquivo.LINK and self.storage_path:
            raise ValueError('links não possuem storage_path')
        if self.tipo != TipoArquivo.LINK and not self.storage_path:
            raise ValueError(f'arquivo do tipo {self.tipo.value} sem storage_path')
        return self

    @property
    def is_link(self):
        return self.tipo == TipoArquivo.LINK


class TimelineEntry(Record):
    id: str
    projeto_id: str
    etapa_id: str
    status: StatusEtapa = StatusEtapa.PENDENTE
    observacoes: Optional[str] = None
    data_inicio: Optional[datetime] = None
    data_conclusao: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    etapa: Optional[Etapa] = None
    arquivos: List[Arquivo] = Field(default_factory=list)

    @property
    def fase_ordem(self):
        if self.etapa and self.etapa.fase:
            return self.etapa.fase.ordem
        return 0

    @property
    def etapa_ordem(self):
        return self.etapa.ordem if self.etapa else 0


class SistemaConfig(Record):
    id: str = SISTEMA_CONFIG_ID
    logo_url: Optional[str] = None
    logo_storage_path: Optional[str] = None
    favicon_url: Optional[str] = None
    favicon_storage_path: Optional[str] = None
    updated_at: Optional[datetime] = None
    updated_by: Optional[str] = None


def parse_record(model, row):
    """Validates one backend row, rejecting it instead of leaking missing fields."""
    if row is None:
        raise MalformedRecordError(details=f'{model.__name__}: linha vazia')
    try:
        return model.model_validate(row)
    except ValidationError as e:
        raise MalformedRecordError(details=f'{model.__name__}: {e}') from e


def parse_records(model, rows):
    return [parse_record(model, row) for row in (rows or [])]
