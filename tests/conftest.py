import io

import pytest

from gpmf_builders import build_container, device, gps5, gpsu, nest, scal


@pytest.fixture
def gps_payload() -> bytes:
    return device(
        nest(
            "STRM",
            gpsu("230615123045.500"),
            scal(1, 1, 1, 1, 1),
            gps5((100, 200, 50, 0, 0)),
        )
    )


@pytest.fixture
def gps_container(gps_payload) -> io.BytesIO:
    return io.BytesIO(build_container([gps_payload], sample_duration=5000))
