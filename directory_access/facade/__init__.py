from .directory_facade import DirectoryFacade

__all__ = ['DirectoryFacade']
