from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any, ClassVar, Generic, TypeVar

from ..models import BuildNode, BuildResult

if TYPE_CHECKING:
    from ..context import ExecutionContext

T = TypeVar("T")


class BuildHandler(ABC, Generic[T]):
    """Executable unit behind a task id.

    Handlers read upstream data through the context, publish their own output by
    returning a ``BuildResult`` and raise a ``BuildError`` subclass on failure.
    """

    id: ClassVar[str]

    @abstractmethod
    async def run(
        self,
        context: "ExecutionContext",
        node: BuildNode,
        dependencies: Mapping[str, BuildResult[Any]],
    ) -> BuildResult[T]:
        ...
