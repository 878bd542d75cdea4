import logging
from typing import Callable, Generic, Iterator, List, Sequence, TypeVar


logger = logging.getLogger(__name__)

T = TypeVar("T")
Listener = Callable[[List[T]], None]


class ObservableList(Generic[T]):
    """Read-only view that pushes a snapshot to listeners on every change.

    Only the owning component calls ``replace``; everybody else reads or
    subscribes.
    """

    def __init__(self) -> None:
        self._items: List[T] = []
        self._listeners: List[Listener] = []

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[T]:
        return iter(list(self._items))

    def __getitem__(self, index: int) -> T:
        return self._items[index]

    def snapshot(self) -> List[T]:
        return list(self._items)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def replace(self, items: Sequence[T]) -> None:
        self._items = list(items)
        snapshot = list(self._items)
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("View listener failed")
