"""
Stopword lists for index and query tokenization.

Base lists cover English, Chinese and common Japanese function words. The
domain lists are a small tuning surface: add only words that are repeatedly
noisy in real recall logs.
"""

ENGLISH_STOP_WORDS = frozenset(
    """
    a about above after again against all also am an and any are aren't as at be because
    been before being below between both but by can can't cannot could couldn't did didn't
    do does doesn't doing don't down during each either else even ever every few for from
    further get gets got had hadn't has hasn't have haven't having he he'd he'll he's her
    here here's hers herself him himself his how how's however i i'd i'll i'm i've if in
    into is isn't it it's its itself just let's like made make many may me might more most
    much must mustn't my myself neither never no nor not now of off often on once only or
    other ought our ours ourselves out over own perhaps quite rather really said same say
    says shall shan't she she'd she'll she's should shouldn't since so some still such than
    that that's the their theirs them themselves then there there's these they they'd
    they'll they're they've this those though through thus to too under until up upon us
    very was wasn't we we'd we'll we're we've well were weren't what what's whatever when
    when's where where's whether which while who who's whom whose why why's will with
    within without won't would wouldn't yes yet you you'd you'll you're you've your yours
    yourself yourselves
    """.split()
)

CHINESE_STOP_WORDS = frozenset(
    """
    的 了 在 是 我 有 和 就 不 人 都 一 一个 上 也 很 到 说 要 去 你 会 着 没有 看 好 自己 这
    那 他 她 它 我们 你们 他们 她们 它们 这个 那个 这些 那些 这样 那样 这里 那里 什么 怎么
    怎么样 为什么 哪里 哪个 谁 多少 几 吗 呢 吧 啊 呀 哦 嗯 哈 嘛 啦 喔 唉 哎 呃 嘿 诶 而 且
    而且 并且 或 或者 还是 但 但是 可是 然而 不过 因为 所以 因此 如果 虽然 虽说 即使 尽管 只是
    只有 只要 除了 以及 及 与 跟 同 对 对于 关于 把 被 让 给 从 向 往 由 于 以 为 为了 比 像
    一样 一起 一直 一下 一些 一点 已经 曾经 正在 将 将要 就是 还 又 再 才 都是 也是 不是 没
    没有 不要 不会 可以 可能 应该 需要 能 能够 得 地 之 其 此 该 每 各 某 另 另外 其他 其它
    所有 任何 有些 有的 这么 那么 如此 非常 十分 特别 比较 更 最 太 挺 真 真的 确实 其实 当然
    然后 接着 于是 之后 以后 之前 以前 现在 当时 时候 时 的话 来说 起来 下去 出来 过来 过去
    一边 一面 有点 好像 似乎 大概 也许 或许 知道 觉得 感觉 认为 看到 听到 开始 继续 还有
    """.split()
)

JAPANESE_STOP_WORDS = frozenset(
    """
    これ それ あれ この その あの ここ そこ あそこ こちら どこ だれ なに なん 何 私 僕 俺
    あなた 彼 彼女 です ます でした ました ない なかった する した して いる いた ある あった
    なる なった れる られる から まで より ので のに けど けれど でも しかし そして また
    さん ちゃん くん こと もの とき ところ よう ため
    """.split()
)

BASE_STOP_WORDS = ENGLISH_STOP_WORDS | CHINESE_STOP_WORDS | JAPANESE_STOP_WORDS

# Extra stopwords on top of BASE_STOP_WORDS.
DOMAIN_STOP_WORDS: frozenset[str] = frozenset()

# High-value words that must never be filtered as stopwords.
# Entity names are protected dynamically by the tokenizer.
KEEP_WORDS: frozenset[str] = frozenset()


def build_stop_words(extra: list[str] | None = None) -> frozenset[str]:
    """Effective stopword set: base + domain + configured extras, lowercased."""
    words = set(BASE_STOP_WORDS) | set(DOMAIN_STOP_WORDS) | set(extra or [])
    return frozenset(w.strip().lower() for w in words if w and w.strip())
