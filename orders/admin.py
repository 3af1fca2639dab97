from django.contrib import admin
from .models import Order


@admin.register(Order)
class OrderAdmin(admin.ModelAdmin):
    list_display = ['__str__', 'restaurant', 'customer', 'total_amount', 'status', 'source', 'created_at']
    list_filter = ['status', 'source', 'restaurant', 'created_at']
    search_fields = ['order_number', 'customer__name', 'customer__phone']
    raw_id_fields = ['customer']
    readonly_fields = ['created_at', 'updated_at']
