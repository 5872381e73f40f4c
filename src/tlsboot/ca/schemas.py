"""
证书引导流程的数据模型定义。
"""

from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, Field


class ArtifactBundle(BaseModel):
    """
    内存中的一整套产物（PEM 编码），要么全部写出，要么都不写。
    """
    ca_key: bytes = Field(repr=False)
    ca_cert: bytes
    server_key: bytes = Field(repr=False)
    server_cert: bytes
    csr: Optional[bytes] = None
    serial_number: int


class ArtifactPaths(BaseModel):
    """
    写出的产物路径。
    """
    ca_key: Path
    ca_cert: Path
    server_key: Path
    server_cert: Path
    csr: Optional[Path] = None


class VerifyCertificateResponse(BaseModel):
    """
    证书归属验证结果。
    """
    is_issued_by_ca: bool
    reason: Optional[str] = None
    issuer_common_name: str | None = None
    subject_common_name: str | None = None
    subject_alt_names: List[str] = []
    serial_number: int | None = None
