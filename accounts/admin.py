from django.contrib import admin
from accounts.models import Customer


@admin.register(Customer)
class CustomerAdmin(admin.ModelAdmin):
    list_display = (
        "display_name",
        "phone",
        "restaurant",
        "total_orders",
        "last_order",
        "created_at",
    )
    list_filter = (
        "restaurant",
        "created_at",
    )
    search_fields = ("name", "phone")
    ordering = ("-created_at",)
    list_select_related = ("restaurant",)
    readonly_fields = ("last_order", "total_orders", "created_at", "updated_at")
