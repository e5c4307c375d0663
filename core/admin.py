"""
Core Admin Configuration
========================
Register core models with Django admin interface.
"""

from django.contrib import admin
from .models import Warehouse


@admin.register(Warehouse)
class WarehouseAdmin(admin.ModelAdmin):
    list_display = ['code', 'name', 'is_default', 'is_active', 'created_at']
    list_filter = ['is_default', 'is_active', 'created_at']
    search_fields = ['code', 'name', 'address']
    readonly_fields = ['id', 'created_at', 'updated_at']
