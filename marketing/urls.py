from django.urls import path
from . import views

urlpatterns = [
    # Campaign list and authoring
    path('', views.campaign_list, name='campaign_list'),
    path('create/', views.campaign_create, name='campaign_create'),
    path('<int:campaign_id>/', views.campaign_detail, name='campaign_detail'),
    path('<int:campaign_id>/cancel/', views.campaign_cancel, name='campaign_cancel'),
    path('<int:campaign_id>/report/', views.campaign_report, name='campaign_report'),

    # API endpoints
    path('api/recipient-count/', views.api_recipient_count, name='api_recipient_count'),

    # External scheduler
    path('process/', views.process_hook, name='campaign_process_hook'),
]
