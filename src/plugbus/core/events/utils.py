"""Name expansion, `before` wrappers and result aggregation shared by the buses."""

from __future__ import annotations

import inspect
import re
from collections.abc import Callable, Mapping
from typing import Any, TypeVar

T = TypeVar("T")

# Iteratee signature shared by every reducer: (accumulator, name, callback, opts) -> accumulator
Iteratee = Callable[[T, Any, Any, dict[str, Any]], T]

TYPE_RANK: dict[str | None, int] = {None: 0, "sync": 1, "async": 2}
RANK_TYPE: dict[int, str | None] = {rank: type_ for type_, rank in TYPE_RANK.items()}


def is_multi_name(name: Any) -> bool:
    """Return True for a space separated list of event names."""
    return isinstance(name, str) and len(name.split()) > 1


def events_api(
    iteratee: Iteratee[T],
    events: T,
    name: Any,
    callback: Any,
    opts: dict[str, Any],
) -> T:
    """
    Expand `name` into single event names and fold `iteratee` over them.

    `name` may be a single name, a space separated list of names or a mapping
    of name to callback. For a mapping the `callback` argument is taken as the
    context when no explicit context was supplied.
    """
    if isinstance(name, Mapping):
        if callback is not None and "context" in opts and opts["context"] is None:
            opts["context"] = callback

        for key, value in name.items():
            events = events_api(iteratee, events, key, value, opts)
    elif is_multi_name(name):
        for single in name.split():
            events = iteratee(events, single, callback, opts)
    else:
        events = iteratee(events, name, callback, opts)

    return events


def before_map(
    events: dict[str, Callable[..., Any]],
    name: str,
    callback: Callable[..., Any] | None,
    opts: dict[str, Any],
) -> dict[str, Callable[..., Any]]:
    """Map `name` to a wrapper that runs `callback` at most `opts["count"]` times."""
    if callback is not None:

        def on_exhausted() -> None:
            wrapper._after(name, wrapper)

        wrapper = _before(opts["count"] + 1, callback, on_exhausted)
        # Replaced by rebind_exhausted() when a held wrapper moves to another proxy.
        wrapper._after = opts["after"]  # type: ignore[attr-defined]
        events[name] = wrapper

    return events


def rebind_exhausted(callback: Callable[..., Any], owner: Any) -> None:
    """
    Point a `once` / `before` wrapper created by another proxy at `owner.off`.

    Callbacks that are not such wrappers, or whose hook is not a proxy `off`
    (for example `listen_to_once` bookkeeping), are left untouched.
    """
    after = getattr(callback, "_after", None)
    if after is None or getattr(after, "__func__", None) is not type(owner).off:
        return

    callback._after = owner.off  # type: ignore[attr-defined]


def _before(
    count: int,
    callback: Callable[..., Any],
    after: Callable[[], None] | None,
) -> Callable[..., Any]:
    result = None

    def wrapper(*args: Any, **kwargs: Any) -> Any:
        nonlocal count, after, result

        count -= 1
        if count > 0:
            result = callback(*args, **kwargs)

        if count <= 1 and after is not None:
            done, after = after, None
            done()

        return result

    # off() matches either the wrapper or the wrapped callback.
    wrapper._callback = callback  # type: ignore[attr-defined]
    return wrapper


def original_callback(callback: Callable[..., Any]) -> Callable[..., Any]:
    """Return the callback wrapped by `once` / `before`, or the callback itself."""
    return getattr(callback, "_callback", callback)


def callback_matches(callback: Callable[..., Any], registered: Callable[..., Any]) -> bool:
    # Bound methods are recreated on every attribute access, so compare by equality.
    return callback == registered or callback == getattr(registered, "_callback", None)


def normalize_options(options: Mapping[str, Any], callback: Callable[..., Any]) -> dict[str, Any]:
    """Copy registration options, filling in `guard` and resolving `type`."""
    guard = options.get("guard")
    target = original_callback(callback)

    if inspect.iscoroutinefunction(target) or inspect.isasyncgenfunction(target):
        type_ = "async"
    else:
        hint = options.get("type")
        type_ = hint if hint in ("sync", "async") else None

    return {"guard": guard if isinstance(guard, bool) else False, "type": type_}


def check_options(options: Any) -> dict[str, Any]:
    if options is None:
        return {}
    if not isinstance(options, dict):
        raise TypeError("'options' must be a dict.")
    return options


def check_regex(regex: Any) -> None:
    if regex is not None and not isinstance(regex, re.Pattern):
        raise TypeError("'regex' is not a compiled regular expression.")


def check_count(count: Any) -> None:
    if isinstance(count, bool) or not isinstance(count, int):
        raise TypeError("'count' is not an integer.")


def collapse(results: list[Any]) -> Any:
    """Apply the 0/1/many rule: None, the bare value, or the list."""
    if not results:
        return None
    if len(results) == 1:
        return results[0]
    return results


def merge_result(results: Any, result: Any) -> Any:
    """Merge one per-name result into the running multi-name result."""
    if isinstance(result, list):
        if results is None:
            return list(result)
        if isinstance(results, list):
            return results + result
        return [results, *result]

    if result is not None:
        if results is None:
            return result
        if isinstance(results, list):
            results.append(result)
            return results
        return [results, result]

    return results


def results_target_api(target: Callable[[str], Any], name: Any) -> Any:
    """
    Run `target` for each name in `name` and merge the results.

    Each per-name result has already been collapsed by the 0/1/many rule; the
    merge concatenates list results rather than nesting them.
    """
    if is_multi_name(name):
        results = None
        for single in name.split():
            results = merge_result(results, target(single))
        return results

    return target(name)


async def resolve(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value
