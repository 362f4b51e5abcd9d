import webstack.pulumi_resources.aws_web_stack

webstack.pulumi_resources.aws_web_stack.AWSWebStack.autoload()
