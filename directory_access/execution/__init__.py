from .command_pool import CommandExecutionPool
from .powershell_session import PowerShellSession, find_powershell_exe

__all__ = ['CommandExecutionPool', 'PowerShellSession', 'find_powershell_exe']
