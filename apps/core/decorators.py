from functools import wraps

from django.contrib.auth.views import redirect_to_login
from django.http import JsonResponse


def staff_required(view_func):
    """Staff-only JSON endpoints; anonymous users are sent to the admin login."""
    @wraps(view_func)
    def wrapper(request, *args, **kwargs):
        if not request.user.is_authenticated:
            return redirect_to_login(request.get_full_path(), login_url="/django-admin/login/")
        if not request.user.is_staff:
            return JsonResponse({"success": False, "error": "Access denied."}, status=403)
        return view_func(request, *args, **kwargs)
    return wrapper
