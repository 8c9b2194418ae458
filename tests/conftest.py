import os

os.environ.setdefault("QT_QPA_PLATFORM", "offscreen")

import pytest

from canlens.frame import Frame

SAMPLE_DBC = """VERSION ""

NS_ :

BS_:

BU_: ECU

BO_ 196 EngineData: 8 ECU
 SG_ EngineSpeed : 0|16@1+ (0.25,0) [0|16383.75] "rpm" ECU
 SG_ CoolantTemp : 16|8@1- (1,-40) [-40|215] "degC" ECU
 SG_ Running : 24|1@1+ (1,0) [0|1] "" ECU

BO_ 339 Gear: 8 ECU
 SG_ GearPos : 0|4@1+ (1,0) [0|15] "" ECU
 SG_ Speed : 23|16@0+ (0.01,0) [0|655.35] "km/h" ECU

BO_ 416 MuxDemo: 8 ECU
 SG_ Page M : 0|8@1+ (1,0) [0|255] "" ECU
 SG_ PageA m0 : 8|8@1+ (1,0) [0|255] "" ECU
 SG_ PageB m1 : 8|16@1+ (1,0) [0|65535] "" ECU

VAL_ 339 GearPos 0 "P" 1 "R" 2 "N" 3 "D" ;
"""


def make_frame(frame_id=0x123, data=b"\x01\x02\x03\x04", **kwargs):
    """Frame with DLC derived from ``data`` unless given."""
    if "dlc" in kwargs:
        return Frame(id=frame_id, data=data, **kwargs)
    return Frame.from_payload(frame_id, data, **kwargs)


@pytest.fixture
def dbc_file(tmp_path):
    path = tmp_path / "vehicle.dbc"
    path.write_text(SAMPLE_DBC)
    return path
