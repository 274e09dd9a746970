# apps/core/views/custom_handler.py

from asgiref.sync import async_to_sync

from common.views_utils import GENERIC_ERROR, OrjsonResponse


async def _async_json_404_handler(request, exception):
    return OrjsonResponse(
        {"detail": "The requested endpoint was not found."},
        status=404,
    )


async def _async_json_500_handler(request):
    return OrjsonResponse(GENERIC_ERROR, status=500)


# Synchronous wrappers: the URLconf check framework inspects handler signatures.
def json_404_handler(request, exception):
    return async_to_sync(_async_json_404_handler)(request, exception)


def json_500_handler(request):
    return async_to_sync(_async_json_500_handler)(request)
