"""
Exception taxonomy shared by services and blueprints.

Every error carries a user-facing (Portuguese) ``message`` and the HTTP status
the JSON layer answers with. Backend exceptions coming from the Supabase
client are translated by :func:`handle_supabase_error`.
"""
import logging

import httpx
from supabase import AuthApiError, PostgrestAPIError, StorageException

logger = logging.getLogger(__name__)

ERROR_MESSAGES = {
    'generic': 'Ocorreu um erro inesperado. Por favor, tente novamente.',
    'network': 'Erro de conexão. Verifique sua internet e tente novamente.',
    'unauthorized': 'Você não tem permissão para realizar esta ação.',
    'not_found': 'Registro não encontrado.',
    'duplicate': 'Registro duplicado.',
    'validation': 'Por favor, verifique os dados informados.',
    'file_too_large': 'Arquivo muito grande. Tamanho máximo: 10MB',
    'invalid_file_type': 'Tipo de arquivo não permitido. Use PDF, Word, Excel ou CSV.',
    'invalid_url': 'URL inválida',
    'invalid_credentials': 'Email ou senha incorretos',
    'email_not_confirmed': 'Por favor, confirme seu email antes de fazer login',
    'session_expired': 'Sua sessão expirou. Por favor, faça login novamente.',
    'session_busy': 'Sua sessão ainda está carregando. Tente novamente em instantes.',
    'malformed': 'Resposta inválida do servidor.',
}


class TimelineCRMError(Exception):
    status_code = 500
    default_message = ERROR_MESSAGES['generic']

    def __init__(self, message=None, code=None, details=None):
        self.message = message or self.default_message
        self.code = code
        self.details = details
        super().__init__(self.message)


class AuthError(TimelineCRMError):
    status_code = 401
    default_message = 'Erro ao fazer login'


class InvalidCredentialsError(AuthError):
    default_message = ERROR_MESSAGES['invalid_credentials']


class EmailNotConfirmedError(AuthError):
    default_message = ERROR_MESSAGES['email_not_confirmed']


class ValidationError(TimelineCRMError):
    status_code = 400
    default_message = ERROR_MESSAGES['validation']

    def __init__(self, message=None, errors=None, **kwargs):
        super().__init__(message, **kwargs)
        self.errors = errors or {}


class InvalidFileTypeError(ValidationError):
    default_message = ERROR_MESSAGES['invalid_file_type']


class FileTooLargeError(ValidationError):
    default_message = ERROR_MESSAGES['file_too_large']


class InvalidUrlError(ValidationError):
    default_message = ERROR_MESSAGES['invalid_url']


class NotFoundError(TimelineCRMError):
    status_code = 404
    default_message = ERROR_MESSAGES['not_found']


class PermissionDeniedError(TimelineCRMError):
    status_code = 403
    default_message = ERROR_MESSAGES['unauthorized']


class DuplicateRecordError(TimelineCRMError):
    status_code = 409
    default_message = ERROR_MESSAGES['duplicate']


class NetworkError(TimelineCRMError):
    status_code = 503
    default_message = ERROR_MESSAGES['network']


class BackendError(TimelineCRMError):
    status_code = 502


class MalformedRecordError(BackendError):
    default_message = ERROR_MESSAGES['malformed']


# PostgREST / Postgres error codes
POSTGREST_CODES = {
    'PGRST116': NotFoundError,
    '23505': DuplicateRecordError,
    '42501': PermissionDeniedError,
}


def handle_supabase_error(error):
    """
    Translates an exception raised by the Supabase client into the taxonomy.
    Already translated errors are returned untouched.
    """
    if isinstance(error, TimelineCRMError):
        return error

    if isinstance(error, PostgrestAPIError):
        error_cls = POSTGREST_CODES.get(error.code)
        if error_cls:
            return error_cls(code=error.code, details=error.details)
        return BackendError(error.message or None, code=error.code, details=error.details)

    if isinstance(error, StorageException):
        # StorageApiError carries attributes; older clients raise with a dict
        payload = error.args[0] if error.args and isinstance(error.args[0], dict) else {}
        status = str(getattr(error, 'status', None) or payload.get('statusCode', ''))
        message = getattr(error, 'message', None) or payload.get('message')
        if status == '404':
            return NotFoundError(details=message)
        if status in ('401', '403'):
            return PermissionDeniedError(details=message)
        if status == '409':
            return DuplicateRecordError(details=message)
        return BackendError(message, code=status or None, details=payload or None)

    if isinstance(error, AuthApiError):
        return AuthError(error.message, code=getattr(error, 'code', None))

    if isinstance(error, httpx.TransportError):
        return NetworkError(details=str(error))

    logger.debug("Unmapped backend error: %r", error)
    return BackendError(str(error) or None)
