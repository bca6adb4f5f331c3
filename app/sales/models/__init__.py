from app.sales.models.billing import (  # noqa: F401
    BillDetailModel,
    BillModel,
    CustomerModel,
    StoreModel,
)
from app.sales.models.ingestion_job import IngestionJobModel  # noqa: F401
