import inspect

from fastapi.routing import APIRoute

from dependencies import context as context_dependencies
from main import create_app


def _calls(dependant) -> set:
    found = set()
    for child in dependant.dependencies:
        found.add(child.call)
        found |= _calls(child)
    return found


def test_every_context_provider_is_used_by_a_route(app_context):
    app = create_app(app_context)
    used = set()
    for route in app.routes:
        if isinstance(route, APIRoute):
            used |= _calls(route.dependant)

    providers = {
        name
        for name, member in inspect.getmembers(context_dependencies, inspect.isfunction)
        if member.__module__ == context_dependencies.__name__
    }

    assert providers == {"get_context", "get_settings", "get_repository", "get_monitor"}
    assert {getattr(context_dependencies, name) for name in providers} <= used
