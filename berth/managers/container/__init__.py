from berth.managers.container.container import ContainerManager, file_language

__all__ = ["ContainerManager", "file_language"]
