import typing as t
from bevy import get_container


class Depends:
    """Dependency registry for strata.

    Thin facade over the bevy container so adapters can register default
    instances (e.g. the memory cache backend) and repositories can resolve
    them when no explicit instance is supplied.
    """

    @staticmethod
    def set(class_: t.Any, instance: t.Any = None, module: str | None = None) -> t.Any:
        """Register a class/instance in the dependency container.

        Returns the instance that was registered.
        """
        if instance is None:
            instance = class_()
        get_container().add(class_, instance, qualifier=module)
        return instance

    @staticmethod
    def get_sync(category: t.Any, module: str | None = None) -> t.Any:
        return get_container().get(category, qualifier=module)

    async def get(self, category: t.Any, module: str | None = None) -> t.Any:
        return self.get_sync(category, module)


depends = Depends()

__all__ = ["Depends", "depends", "get_container"]
