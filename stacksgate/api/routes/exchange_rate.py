"""Exchange rate API routes — current BTC/USD rate, trend and conversion."""

from fastapi import APIRouter, Depends, HTTPException, Request

from stacksgate.api.schemas.exchange_rate import ConvertRequest, ConvertResponse, ExchangeRateResponse
from stacksgate.services.rates import RateOracle, format_currency

router = APIRouter()


def get_rate_oracle(request: Request) -> RateOracle:
    oracle = getattr(request.app.state, "rate_oracle", None)
    if oracle is None:
        raise HTTPException(status_code=503, detail="Exchange rate service is not available")
    return oracle


@router.get("", response_model=ExchangeRateResponse)
async def get_exchange_rate(oracle: RateOracle = Depends(get_rate_oracle)):
    snapshot = await oracle.get_rate()
    return ExchangeRateResponse.from_snapshot(snapshot)


@router.get("/trend", response_model=ExchangeRateResponse)
async def get_exchange_rate_trend(oracle: RateOracle = Depends(get_rate_oracle)):
    snapshot = await oracle.with_trend()
    return ExchangeRateResponse.from_snapshot(snapshot)


@router.post("/convert", response_model=ConvertResponse)
async def convert_amount(body: ConvertRequest, oracle: RateOracle = Depends(get_rate_oracle)):
    """Convert between USD and sBTC. Invalid amounts surface as 400 via the ValidationError handler."""
    result = await oracle.convert(body.amount, body.from_unit, body.to_unit)
    return ConvertResponse(
        amount=result.amount,
        from_unit=result.from_unit,
        converted=result.converted,
        to_unit=result.to_unit,
        formatted=format_currency(result.converted, result.to_unit),
        rate=result.rate,
        source=result.source,
    )
