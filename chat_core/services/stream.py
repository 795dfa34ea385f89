"""流式片段聚合。"""

from typing import Callable, Iterable, List, Optional

PartialCallback = Callable[[str], None]


def aggregate(chunks: Iterable[str], on_partial: Optional[PartialCallback] = None) -> str:
    """消费完整个片段序列，按产出顺序拼接为最终文本。

    on_partial 每个片段调用一次，参数是**本次增量**而不是累计文本。
    序列中途抛出的异常（StreamError 等）原样向上传播，不返回部分文本；
    需要“失败时的部分内容”的调用方应自行记录 on_partial 已收到的片段。
    无论成功与否，结束时都会关闭源序列以释放底层连接。
    """

    pieces: List[str] = []
    iterator = iter(chunks)
    try:
        for chunk in iterator:
            pieces.append(chunk)
            if on_partial is not None:
                on_partial(chunk)
    finally:
        for target in (iterator, chunks):
            close = getattr(target, "close", None)
            if close is not None:
                close()
    return "".join(pieces)
