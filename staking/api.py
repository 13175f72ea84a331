from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Response, status
from fastapi.middleware.cors import CORSMiddleware

from .config import Settings, configure_logging
from .errors import (
    AlreadyLocked,
    AlreadyProcessed,
    InvalidAmount,
    NotFound,
    TransientStoreError,
)
from .models import (
    AccrualRunRequest,
    AccrualRunResult,
    CreditDepositRequest,
    DistributionRunResponse,
    PaymentResponse,
    Stake,
    SweepResult,
    User,
)
from .scheduler import DailyAccrualScheduler
from .service import StakingService


def create_app(
    service: Optional[StakingService] = None,
    settings: Optional[Settings] = None,
    root_path: str = "",
) -> FastAPI:
    settings = settings or (service.settings if service else Settings.from_env())
    staking_service = service or StakingService(settings=settings)
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        scheduler = None
        if settings.scheduler_enabled:
            scheduler = DailyAccrualScheduler(staking_service, settings)
            scheduler.start()
        yield
        if scheduler is not None:
            scheduler.stop()

    app = FastAPI(
        title="Stake Ledger API",
        description="Deposit crediting, daily accrual and returns distribution for fixed-term stakes",
        version="1.0.0",
        root_path=root_path,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.staking_service = staking_service

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": "stake-ledger"}

    @app.post("/deposits/credit", response_model=PaymentResponse, status_code=status.HTTP_201_CREATED, tags=["Deposits"])
    def credit_deposit(request: CreditDepositRequest, response: Response) -> PaymentResponse:
        try:
            result = staking_service.handle_confirmed_payment(
                request.reference, request.gross_amount, request.user_id, request.phone, request.raw_event
            )
        except NotFound as e:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
        except InvalidAmount as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
        except TransientStoreError as e:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
        if result.deposit.already_credited:
            response.status_code = status.HTTP_200_OK
        return result

    @app.post("/jobs/daily-accrual", response_model=AccrualRunResult, tags=["Jobs"])
    def run_daily_accrual(request: Optional[AccrualRunRequest] = None) -> AccrualRunResult:
        run_date = request.run_date if request else None
        try:
            return staking_service.run_daily_accrual(run_date)
        except ValueError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Invalid run_date: {e}")

    @app.post("/distributions/sweep", response_model=SweepResult, tags=["Distributions"])
    def sweep_distributions() -> SweepResult:
        return staking_service.sweep_pending_distributions()

    @app.post("/distributions/{stake_id}/run", response_model=DistributionRunResponse, tags=["Distributions"])
    def run_distribution(stake_id: str) -> DistributionRunResponse:
        try:
            result = staking_service.run_distribution(stake_id)
        except AlreadyProcessed as e:
            return DistributionRunResponse(stake_id=stake_id, already_processed=True, message=str(e))
        except AlreadyLocked as e:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
        except NotFound as e:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
        except TransientStoreError as e:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
        return DistributionRunResponse(stake_id=stake_id, result=result, message="Distribution completed")

    @app.get("/users/{user_id}", response_model=User, tags=["Users"])
    def get_user(user_id: str) -> User:
        try:
            return staking_service.get_user(user_id)
        except NotFound as e:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    @app.get("/stakes/{stake_id}", response_model=Stake, tags=["Stakes"])
    def get_stake(stake_id: str) -> Stake:
        try:
            return staking_service.get_stake(stake_id)
        except NotFound as e:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
