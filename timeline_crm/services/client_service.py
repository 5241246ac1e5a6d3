import logging
import secrets

from timeline_crm.errors import TimelineCRMError, ValidationError, handle_supabase_error
from timeline_crm.models import Cliente, UserRole, parse_record, parse_records
from timeline_crm.utils import as_bool, as_text, is_required, is_valid_email, is_valid_phone

logger = logging.getLogger(__name__)

PASSWORD_CHARS = 'ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789!@#$%'
PASSWORD_LENGTH = 12

CLIENTE_FIELDS = ('nome', 'email', 'telefone', 'empresa', 'ativo')


def generate_password(length=PASSWORD_LENGTH):
    return ''.join(secrets.choice(PASSWORD_CHARS) for _ in range(length))


def validate_cliente(data):
    errors = {}
    if not is_required(data.get('nome')):
        errors['nome'] = 'Nome é obrigatório'
    if not is_required(data.get('email')):
        errors['email'] = 'Email é obrigatório'
    elif not is_valid_email(data.get('email')):
        errors['email'] = 'Email inválido'
    if data.get('telefone') and not is_valid_phone(data.get('telefone')):
        errors['telefone'] = 'Telefone inválido'
    if errors:
        raise ValidationError(errors=errors)


def clean_cliente(data):
    row = {key: data[key] for key in CLIENTE_FIELDS if key in data}
    for key in ('nome', 'email', 'telefone', 'empresa'):
        if row.get(key) is not None:
            row[key] = as_text(row[key]) or None
    if 'ativo' in row:
        row['ativo'] = as_bool(row['ativo'])
    return row


class ClienteService:

    def __init__(self, client, signup_auth=None):
        self.client = client
        self.signup_auth = signup_auth or client.auth

    def list_all(self):
        try:
            res = self.client.table('clientes').select('*').order('nome').execute()
        except Exception as e:
            raise handle_supabase_error(e) from e
        return parse_records(Cliente, res.data)

    def get(self, cliente_id):
        try:
            res = self.client.table('clientes').select('*').eq('id', cliente_id).single().execute()
        except Exception as e:
            raise handle_supabase_error(e) from e
        return parse_record(Cliente, res.data)

    def create(self, data):
        """
        Creates the client, its auth account (random password) and its
        ``users`` profile. Returns (cliente, credentials); the password is
        only available here.
        """
        row = clean_cliente(data)
        validate_cliente(row)
        row.setdefault('ativo', True)

        try:
            res = self.client.table('clientes').insert(row).execute()
            cliente = parse_record(Cliente, res.data[0] if res.data else None)

            password = generate_password()
            auth_res = self.signup_auth.sign_up({
                'email': cliente.email,
                'password': password,
                'options': {
                    'data': {
                        'nome': cliente.nome,
                        'role': UserRole.CLIENTE.value,
                        'cliente_id': cliente.id,
                    }
                },
            })
            if not auth_res or not auth_res.user:
                raise TimelineCRMError('Erro ao criar acesso do cliente')

            self.client.table('users').insert({
                'id': auth_res.user.id,
                'email': cliente.email,
                'nome': cliente.nome,
                'role': UserRole.CLIENTE.value,
                'cliente_id': cliente.id,
            }).execute()
        except TimelineCRMError:
            raise
        except Exception as e:
            logger.error("Erro ao salvar cliente %s: %s", data.get('email'), e)
            raise handle_supabase_error(e) from e

        logger.info("Cliente criado: %s (%s)", cliente.nome, cliente.id)
        return cliente, {'email': cliente.email, 'password': password}

    def update(self, cliente_id, data):
        row = clean_cliente(data)
        if not row:
            raise ValidationError('Nenhum campo para atualizar')
        validate_cliente({**self.get(cliente_id).to_row(), **row})

        try:
            res = self.client.table('clientes').update(row).eq('id', cliente_id).execute()
        except Exception as e:
            raise handle_supabase_error(e) from e
        return parse_record(Cliente, res.data[0] if res.data else None)
