from typing import Annotated
from fastapi import Path
from pydantic import Field
from lifestream.database import MAX_RECORD_ID

# Ids outside the key range can never match a row
RecordId = Annotated[int, Field(gt=0, le=MAX_RECORD_ID)]

RecordIdPath = Annotated[int, Path(gt=0, le=MAX_RECORD_ID)]
