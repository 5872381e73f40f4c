"""
证书引导流程的异常定义。

- ValidationError: 输入不合法（DN 字段为空或超长、SAN 为空、有效期非正数等）
- CryptoError: 密钥生成失败或参数不被接受
- SigningError: CA 签发失败，细分为 InvalidProofOfPossession / PolicyViolation / ExpiredPolicy

ValidationError 继承 ValueError，其余继承 RuntimeError，调用方可以按这两类统一处理。
"""


class ValidationError(ValueError):
    """输入校验失败。"""


class CryptoError(RuntimeError):
    """密钥材料生成失败。"""


class SigningError(RuntimeError):
    """CA 拒绝签发证书。"""


class InvalidProofOfPossession(SigningError):
    """CSR 自签名无法用其内嵌公钥验证。"""


class PolicyViolation(SigningError):
    """CSR 请求了签发策略不允许的扩展（如 CA:TRUE）。"""


class ExpiredPolicy(SigningError):
    """请求的有效期超出了 CA 自身的剩余寿命。"""
