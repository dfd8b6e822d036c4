from django.conf import settings
from django.core.checks import Error, register

from .models import ResolutionStrategy


@register()
def check_default_resolution(app_configs, **kwargs):
    value = getattr(settings, "SYNC_DEFAULT_RESOLUTION", ResolutionStrategy.SERVER_WINS)
    if value in ResolutionStrategy.values:
        return []
    return [
        Error(
            f"SYNC_DEFAULT_RESOLUTION is {value!r}.",
            hint=f"Use one of {', '.join(ResolutionStrategy.values)}.",
            id="sync.E001",
        )
    ]
