from django.contrib import admin
from django.http import JsonResponse
from django.urls import include, path
from django.views.decorators.http import require_http_methods
from rest_framework.authtoken.views import obtain_auth_token


@require_http_methods(["GET"])
def home(request):
    """API index"""
    return JsonResponse({
        'status': 'online',
        'service': 'MedLink API',
        'version': '1.0.0',
        'endpoints': {
            'pharmacies': '/api/pharmacies/',
            'medicines': '/api/medicines/',
            'search': '/api/search/',
            'cart': '/api/cart/',
            'reservations': '/api/reservations/',
            'deliveries': '/api/deliveries/',
            'admin': '/admin/',
            'health': '/health/',
        },
    })


@require_http_methods(["GET"])
def health_check(request):
    return JsonResponse({
        'status': 'healthy',
        'service': 'medlink-api'
    })


urlpatterns = [
    path('', home, name='home'),
    path('health/', health_check, name='health'),
    path('admin/', admin.site.urls),
    path('api/auth/token/', obtain_auth_token, name='api-token'),
    path('api/', include('orders.urls')),
    path('api/', include('pharmacies.urls')),
]
