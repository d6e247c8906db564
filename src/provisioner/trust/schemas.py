from enum import Enum


class Platform(str, Enum):
    LINUX = "linux"
    MACOS = "macos"
    WINDOWS = "windows"


class StoreLocation(str, Enum):
    """本地信任库中的容器：根证书库或中间 CA 库。"""

    ROOT = "root"
    INTERMEDIATE = "intermediate"
