import pydantic_settings


class GPMFReaderConfig(pydantic_settings.BaseSettings):
    model_config = pydantic_settings.SettingsConfigDict(env_prefix="GPMF_READER_")

    # --- Container Limits ---
    MAX_TRACKS: int = 16
    NEST_LIMIT: int = 16

    # --- Track Markers ---
    # hdlr handler type and stsd sample format of the telemetry track
    METADATA_HANDLER: str = "meta"
    METADATA_SUBTYPE: str = "gpmd"

    # --- GPS Quality ---
    # Raw GPSP units (DOP x 100)
    DOP_UNRELIABLE_THRESHOLD: int = 999

    # --- Magnetometer Calibration ---
    # Units: scaled MAGN counts
    MAGN_CENTER_X: float = 156.23
    MAGN_CENTER_Y: float = 21.3


config = GPMFReaderConfig()
