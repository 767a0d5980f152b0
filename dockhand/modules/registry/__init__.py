from .client import RegistryClient, open_registry_connection
