from importlib import import_module

__all__ = [
    "ScanOrchestrator",
    "PlatformSyncService",
    "AlertNotifier",
    "OpportunityAnalyzer",
    "create_platform_client",
]

_LAZY_EXPORTS = {
    "ScanOrchestrator": ("services.scan_orchestrator", "ScanOrchestrator"),
    "PlatformSyncService": ("services.platform_sync", "PlatformSyncService"),
    "AlertNotifier": ("services.notifier", "AlertNotifier"),
    "OpportunityAnalyzer": ("services.ai.opportunity_analyzer", "OpportunityAnalyzer"),
    "create_platform_client": ("services.platforms", "create_platform_client"),
}


def __getattr__(name):
    if name not in _LAZY_EXPORTS:
        raise AttributeError(f"module 'services' has no attribute {name!r}")

    module_name, attr_name = _LAZY_EXPORTS[name]
    module = import_module(module_name)
    value = getattr(module, attr_name)
    globals()[name] = value
    return value
