import logging

from supabase import AuthApiError

from timeline_crm.errors import AuthError, ValidationError, handle_supabase_error
from timeline_crm.models import User, parse_record
from timeline_crm.utils import as_text, get_now_iso, is_required, is_valid_email, is_valid_phone

logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 6


def validate_login(email, password):
    errors = {}
    if not is_required(email):
        errors['email'] = 'Email é obrigatório'
    elif not is_valid_email(email):
        errors['email'] = 'Email inválido'
    if not is_required(password):
        errors['password'] = 'Senha é obrigatória'
    elif len(password) < MIN_PASSWORD_LENGTH:
        errors['password'] = 'Senha deve ter no mínimo 6 caracteres'
    if errors:
        raise ValidationError(errors=errors)


def validate_password_change(current, new, confirm):
    errors = {}
    if not current:
        errors['senha_atual'] = 'Senha atual é obrigatória'
    if not new:
        errors['nova_senha'] = 'Nova senha é obrigatória'
    elif len(new) < MIN_PASSWORD_LENGTH:
        errors['nova_senha'] = 'Senha deve ter no mínimo 6 caracteres'
    if not confirm:
        errors['confirmar_senha'] = 'Confirme a nova senha'
    elif new and new != confirm:
        errors['confirmar_senha'] = 'As senhas não coincidem'
    if current and new and current == new:
        errors['nova_senha'] = 'A nova senha deve ser diferente da atual'
    if errors:
        raise ValidationError(errors=errors)


class ProfileService:

    def __init__(self, client):
        self.client = client

    def update_profile(self, user, nome, telefone=None):
        nome = as_text(nome)
        telefone = as_text(telefone)
        errors = {}
        if not is_required(nome):
            errors['nome'] = 'Nome é obrigatório'
        if telefone and not is_valid_phone(telefone):
            errors['telefone'] = 'Telefone inválido'
        if errors:
            raise ValidationError(errors=errors)

        updates = {
            'nome': nome,
            'telefone': telefone or None,
            'updated_at': get_now_iso(),
        }
        try:
            res = self.client.table('users').update(updates).eq('id', user.id).execute()
        except Exception as e:
            raise handle_supabase_error(e) from e

        logger.info("Perfil atualizado: %s", user.email)
        return parse_record(User, res.data[0] if res.data else None)

    def change_password(self, user, current, new, confirm):
        """Re-authenticates with the current password before setting the new one."""
        current, new, confirm = (as_text(value, strip=False) for value in (current, new, confirm))
        validate_password_change(current, new, confirm)

        try:
            self.client.auth.sign_in_with_password({'email': user.email, 'password': current})
        except AuthApiError as e:
            logger.warning("Senha atual incorreta para %s", user.email)
            raise ValidationError(errors={'senha_atual': 'Senha atual incorreta'}) from e

        try:
            self.client.auth.update_user({'password': new})
        except Exception as e:
            raise handle_supabase_error(e) from e
        logger.info("Senha alterada: %s", user.email)

    def request_password_reset(self, email, site_url):
        email = as_text(email)
        if not is_required(email):
            raise ValidationError(errors={'email': 'Email é obrigatório'})
        if not is_valid_email(email):
            raise ValidationError(errors={'email': 'Email inválido'})

        try:
            self.client.auth.reset_password_for_email(
                email, {'redirect_to': f"{site_url.rstrip('/')}/reset-password"}
            )
        except AuthApiError as e:
            raise AuthError(e.message or None, code=getattr(e, 'code', None)) from e
        except Exception as e:
            raise handle_supabase_error(e) from e
        logger.info("Reset de senha solicitado para %s", email)
