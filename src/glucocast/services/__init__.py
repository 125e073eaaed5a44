# glucocast Services Package
# Note: Import specific items as needed to avoid circular imports

__all__ = [
    # Forecast facade
    "ForecastService",
    "update_time_of_day_params",
    # Estimation and forecasting
    "ParameterAnalyzer",
    "PhysiologicalPredictor",
    "EnsembleForecastEngine",
    "EngineState",
    # IOB/COB
    "IOBCOBService",
    # Collaborators
    "HistorySource",
    "NightscoutSource",
    "ParameterStore",
    "JsonParameterStore",
]

_LOCATIONS = {
    "ForecastService": "glucocast.services.forecast_service",
    "update_time_of_day_params": "glucocast.services.forecast_service",
    "ParameterAnalyzer": "glucocast.services.analyzer",
    "PhysiologicalPredictor": "glucocast.services.physiological_predictor",
    "EnsembleForecastEngine": "glucocast.services.ensemble_engine",
    "EngineState": "glucocast.services.ensemble_engine",
    "IOBCOBService": "glucocast.services.iob_cob_service",
    "HistorySource": "glucocast.services.nightscout_source",
    "NightscoutSource": "glucocast.services.nightscout_source",
    "ParameterStore": "glucocast.services.parameter_store",
    "JsonParameterStore": "glucocast.services.parameter_store",
}


# Lazy imports to avoid circular dependencies
def __getattr__(name):
    if name in _LOCATIONS:
        import importlib
        module = importlib.import_module(_LOCATIONS[name])
        return getattr(module, name)
    raise AttributeError(f"module 'glucocast.services' has no attribute '{name}'")
