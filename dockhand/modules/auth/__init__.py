from .auth import RegistryAuth, basic_auth_value, is_success
