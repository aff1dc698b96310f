from .base_directory_adapter import BaseDirectoryAdapter
from .ldap_adapter import LDAPAdapter
from .powershell_adapter import PowerShellAdapter

__all__ = ['BaseDirectoryAdapter', 'LDAPAdapter', 'PowerShellAdapter']
