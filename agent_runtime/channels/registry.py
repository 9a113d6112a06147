from typing import Dict, Iterator, List, Optional, Tuple, Type

from .base import Channel


class ChannelRegistry:
    """通道类型的显式注册表，名称 → 通道类。"""

    def __init__(self):
        self._channels: Dict[str, Type[Channel]] = {}

    def register(self, channel_cls: Type[Channel]) -> None:
        self._channels.setdefault(channel_cls.name, channel_cls)

    def get(self, name: str) -> Optional[Type[Channel]]:
        return self._channels.get(name)

    def names(self) -> List[str]:
        return list(self._channels)

    def items(self) -> Iterator[Tuple[str, Type[Channel]]]:
        return iter(list(self._channels.items()))

    def __contains__(self, name: object) -> bool:
        return name in self._channels


def default_channel_registry() -> ChannelRegistry:
    from .cli import CliChannel
    from .telegram import TelegramChannel

    registry = ChannelRegistry()
    registry.register(CliChannel)
    registry.register(TelegramChannel)
    return registry
