from typing import Optional

from models.schema import PollingTier, PollingWindow


def choose_polling_window(detector_window: PollingWindow, oracle_window: Optional[PollingWindow] = None) -> PollingWindow:
    # Detector first, daily strategy only when the detector is quiet.
    if detector_window.tier != PollingTier.NORMAL:
        return detector_window
    if oracle_window is not None and (oracle_window.tier != PollingTier.NORMAL or oracle_window.target_dates):
        return oracle_window
    return detector_window
