import os
from typing import Any, Dict

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class DirectoryConfig:
    """Centralized directory access configuration management."""

    @staticmethod
    def get_config() -> Dict[str, Any]:
        """Get directory configuration from environment variables."""
        backend = os.getenv('AD_BACKEND', 'ldap').lower()
        use_ssl = _env_bool('AD_USE_SSL', 'true')

        base_config = {
            'backend': backend,
            'server': os.getenv('AD_SERVER'),
            'search_base': os.getenv('AD_SEARCH_BASE'),
            'user': os.getenv('AD_SERVICE_USER'),
            'keyring_service': os.getenv('AD_KEYRING_SERVICE'),
            'password': os.getenv('AD_SERVICE_PASSWORD'),
            'result_ceiling': int(os.getenv('AD_RESULT_CEILING', '5000')),
            'default_page_size': int(os.getenv('AD_DEFAULT_PAGE_SIZE', '100')),
            'max_page_size': int(os.getenv('AD_MAX_PAGE_SIZE', '500')),
        }

        if backend == 'ldap':
            base_config.update({
                'use_ssl': use_ssl,
                'port': int(os.getenv('AD_PORT', '636' if use_ssl else '389')),
                'timeout': int(os.getenv('AD_TIMEOUT', '20')),
                'page_size': int(os.getenv('AD_LDAP_PAGE_SIZE', '500')),
            })
        elif backend == 'powershell':
            base_config.update({
                'pool_min_sessions': int(os.getenv('AD_POOL_MIN', '1')),
                'pool_max_sessions': int(os.getenv('AD_POOL_MAX', '4')),
                'script_timeout': float(os.getenv('AD_SCRIPT_TIMEOUT', '30')),
                'powershell_exe': os.getenv('AD_POWERSHELL_EXE'),
            })

        return base_config

    @staticmethod
    def get_backend_configs() -> Dict[str, Dict[str, Any]]:
        """Get example environment settings for each backend."""
        return {
            'ldap': {
                'AD_BACKEND': 'ldap',
                'AD_SERVER': 'dc01.corp.example.com',
                'AD_USE_SSL': 'true',
                'AD_PORT': '636',
                'AD_SEARCH_BASE': 'DC=corp,DC=example,DC=com',
                'AD_SERVICE_USER': 'CORP\\svc-adconsole',
                'AD_KEYRING_SERVICE': 'ad_admin_console',
                'AD_TIMEOUT': '20',
            },
            'powershell': {
                'AD_BACKEND': 'powershell',
                'AD_SERVER': 'dc01.corp.example.com',
                'AD_SEARCH_BASE': 'DC=corp,DC=example,DC=com',
                'AD_SERVICE_USER': 'CORP\\svc-adconsole',
                'AD_KEYRING_SERVICE': 'ad_admin_console',
                'AD_POOL_MIN': '1',
                'AD_POOL_MAX': '4',
                'AD_SCRIPT_TIMEOUT': '30',
                'AD_POWERSHELL_EXE': 'pwsh',
            },
        }
