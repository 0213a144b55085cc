from shieldtrade.schemas.dca import (  # noqa: F401
    BuyRecordResponse,
    ConfirmBuyRequest,
    DCAOrderCreate,
    DCAOrderResponse,
    PendingBuyResponse,
)
from shieldtrade.schemas.position import (  # noqa: F401
    ExecuteSellRequest,
    PendingSellResponse,
    PositionResponse,
)
