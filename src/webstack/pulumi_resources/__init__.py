import pulumi

StrInput = str | pulumi.Output[str]
